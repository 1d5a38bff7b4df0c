"""Tests for the in-memory repositories"""
import threading

import pytest

from approval_engine.domain.enums import InstanceStatus
from approval_engine.domain.errors import (
    ConflictError, StaleInstanceStateError, InstanceNotFoundError
)

from tests.helpers import build_step


@pytest.fixture
def instance(start_instance):
    return start_instance([build_step(1)])


class TestInstanceRepository:

    def test_reads_are_copies(self, instance_repo, instance):
        first = instance_repo.get(instance.instance_id)
        first.context.attributes["changed"] = True

        assert "changed" not in instance_repo.get(instance.instance_id).context.attributes

    def test_duplicate_create(self, instance_repo, instance):
        with pytest.raises(ConflictError):
            instance_repo.create(instance)

    def test_replace_bumps_version(self, instance_repo, instance):
        saved = instance_repo.replace(instance, expected_version=instance.version)

        assert saved.version == instance.version + 1

    def test_replace_with_old_version(self, instance_repo, instance):
        instance_repo.replace(instance, expected_version=instance.version)

        with pytest.raises(StaleInstanceStateError):
            instance_repo.replace(instance, expected_version=instance.version)

    def test_replace_unknown(self, instance_repo, instance):
        ghost = instance.model_copy(update={"instance_id": "WFI-ghost"})

        with pytest.raises(InstanceNotFoundError):
            instance_repo.replace(ghost, expected_version=1)

    def test_one_writer_wins(self, instance_repo, instance):
        outcomes = []
        barrier = threading.Barrier(8)

        def write():
            barrier.wait()
            try:
                instance_repo.replace(instance, expected_version=instance.version)
                outcomes.append("saved")
            except StaleInstanceStateError:
                outcomes.append("stale")

        threads = [threading.Thread(target=write) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(outcomes) == ["saved"] + ["stale"] * 7

    def test_list_active_skips_terminal(self, instance_repo, start_instance, clock):
        first = start_instance([build_step(1)])
        clock.advance(hours=1)
        second = start_instance([build_step(1)])
        instance_repo.replace(
            first.model_copy(update={"status": InstanceStatus.APPROVED}), expected_version=first.version
        )

        assert [i.instance_id for i in instance_repo.list_active()] == [second.instance_id]

    def test_list_active_pages_by_cursor(self, instance_repo, start_instance, clock):
        started = []
        for _ in range(3):
            started.append(start_instance([build_step(1)]).instance_id)
            clock.advance(hours=1)

        first = instance_repo.list_active(limit=2)
        last = first[-1]
        rest = instance_repo.list_active(limit=2, after=(last.initiated_at, last.instance_id))

        assert [i.instance_id for i in first + rest] == started

    def test_cursor_breaks_ties_by_instance_id(self, instance_repo, start_instance):
        ids = sorted(start_instance([build_step(1)]).instance_id for _ in range(3))
        first = instance_repo.get(ids[0])

        after_first = instance_repo.list_active(after=(first.initiated_at, first.instance_id))

        assert [i.instance_id for i in after_first] == ids[1:]

    def test_list_by_reference(self, instance_repo, instance):
        assert [i.instance_id for i in instance_repo.list_by_reference("leave_request", "LR-1")] == [
            instance.instance_id
        ]


class TestTemplateRepository:

    def test_version_conflict(self, template_repo, make_template):
        template = make_template([build_step(1)])
        template_repo.replace(template, expected_version=template.version)

        with pytest.raises(ConflictError):
            template_repo.replace(template, expected_version=template.version)

    def test_list_by_code_oldest_first(self, template_repo, make_template, clock):
        old = make_template([build_step(1)], code="LEAVE")
        clock.advance(days=1)
        new = make_template([build_step(1)], code="LEAVE")
        make_template([build_step(1)], code="OTHER")

        assert [t.template_id for t in template_repo.list_by_code("LEAVE")] == [old.template_id, new.template_id]


class TestOutbox:

    def test_undispatched_until_marked(self, outbox, instance, events):
        event = events[0].model_copy(update={"event_id": "EVT-manual", "dispatched_at": None})
        outbox.append(event)

        assert [e.event_id for e in outbox.list_undispatched()] == ["EVT-manual"]

        outbox.mark_dispatched("EVT-manual")

        assert outbox.list_undispatched() == []
        assert len(outbox.list_for_instance(instance.instance_id)) == 2
