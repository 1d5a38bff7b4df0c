"""Tests for the MongoDB repositories against mocked collections"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from approval_engine.domain.models import (
    WorkflowTemplate, WorkflowInstance, WorkflowStepAction, WorkflowEvent, InstanceContext
)
from approval_engine.domain.enums import (
    WorkflowCategory, InstanceStatus, StepActionType, EventType, TERMINAL_STATUSES
)
from approval_engine.domain.errors import (
    ConflictError, StaleInstanceStateError, InstanceNotFoundError, TemplateNotFoundError
)
from approval_engine.repositories.template_repo import MongoTemplateRepository
from approval_engine.repositories.instance_repo import MongoInstanceRepository, MongoActionRepository
from approval_engine.repositories.event_repo import MongoEventOutboxRepository

NOW = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def collection():
    return MagicMock()


@pytest.fixture
def instance():
    return WorkflowInstance(
        instance_id="WFI-1",
        template_id="WFT-1",
        template_code="LEAVE",
        category=WorkflowCategory.LEAVE_REQUEST,
        reference_type="leave_request",
        reference_id="LR-1",
        context=InstanceContext(subject_id="emp-1"),
        steps=[],
        status=InstanceStatus.IN_PROGRESS,
        initiated_by="init-1",
        initiated_at=NOW,
        updated_at=NOW,
        version=4,
    )


def stored(model, key):
    doc = model.model_dump(mode="json")
    doc["_id"] = getattr(model, key)
    return doc


class TestMongoInstanceRepository:

    def test_create_uses_instance_id_as_key(self, collection, instance):
        MongoInstanceRepository(collection).create(instance)

        doc = collection.insert_one.call_args[0][0]
        assert doc["_id"] == "WFI-1"
        assert doc["initiated_at"] == "2025-03-03T09:00:00Z"

    def test_duplicate_create(self, collection, instance):
        collection.insert_one.side_effect = DuplicateKeyError("duplicate key")

        with pytest.raises(ConflictError):
            MongoInstanceRepository(collection).create(instance)

    def test_get_round_trips_document(self, collection, instance):
        collection.find_one.return_value = stored(instance, "instance_id")

        assert MongoInstanceRepository(collection).get("WFI-1") == instance

    def test_get_missing(self, collection):
        collection.find_one.return_value = None

        assert MongoInstanceRepository(collection).get("WFI-1") is None

    def test_replace_is_compare_and_set(self, collection, instance):
        collection.find_one_and_replace.return_value = {**stored(instance, "instance_id"), "version": 5}

        saved = MongoInstanceRepository(collection).replace(instance, expected_version=4)

        query, doc = collection.find_one_and_replace.call_args[0]
        assert query == {"instance_id": "WFI-1", "version": 4}
        assert doc["version"] == 5
        assert collection.find_one_and_replace.call_args[1]["return_document"] == ReturnDocument.AFTER
        assert saved.version == 5

    def test_replace_lost_race(self, collection, instance):
        collection.find_one_and_replace.return_value = None
        collection.find_one.return_value = stored(instance, "instance_id")

        with pytest.raises(StaleInstanceStateError):
            MongoInstanceRepository(collection).replace(instance, expected_version=3)

    def test_replace_missing(self, collection, instance):
        collection.find_one_and_replace.return_value = None
        collection.find_one.return_value = None

        with pytest.raises(InstanceNotFoundError):
            MongoInstanceRepository(collection).replace(instance, expected_version=4)

    def test_list_active_excludes_terminal_statuses(self, collection, instance):
        cursor = collection.find.return_value.sort.return_value
        cursor.limit.return_value = [stored(instance, "instance_id")]

        found = MongoInstanceRepository(collection).list_active(limit=10)

        query = collection.find.call_args[0][0]
        assert set(query["status"]["$nin"]) == {s.value for s in TERMINAL_STATUSES}
        cursor.limit.assert_called_once_with(10)
        assert [i.instance_id for i in found] == ["WFI-1"]

    def test_list_active_after_cursor(self, collection, instance):
        collection.find.return_value.sort.return_value = []

        MongoInstanceRepository(collection).list_active(after=(NOW, "WFI-1"))

        query = collection.find.call_args[0][0]
        assert query["$or"] == [
            {"initiated_at": {"$gt": "2025-03-03T09:00:00Z"}},
            {"initiated_at": "2025-03-03T09:00:00Z", "instance_id": {"$gt": "WFI-1"}},
        ]
        collection.find.return_value.sort.assert_called_once_with([("initiated_at", 1), ("instance_id", 1)])


class TestMongoActionRepository:

    def test_append_and_list(self, collection):
        action = WorkflowStepAction(
            action_id="ACT-1", instance_id="WFI-1", step_order=1,
            action=StepActionType.APPROVE, actor_id="mgr-1", acted_at=NOW
        )
        repo = MongoActionRepository(collection)

        repo.append(action)
        collection.find.return_value.sort.return_value = [{**action.model_dump(mode="json"), "_id": "oid"}]

        assert repo.list_for_instance("WFI-1") == [action]
        assert collection.find.return_value.sort.call_args[0][0] == [("acted_at", 1), ("_id", 1)]
        assert "_id" not in collection.insert_one.call_args[0][0]


class TestMongoTemplateRepository:

    @pytest.fixture
    def template(self):
        return WorkflowTemplate(
            template_id="WFT-1", name="Leave", code="LEAVE", category=WorkflowCategory.LEAVE_REQUEST,
            created_at=NOW, updated_at=NOW
        )

    def test_replace_conflict(self, collection, template):
        collection.find_one_and_replace.return_value = None
        collection.find_one.return_value = stored(template, "template_id")

        with pytest.raises(ConflictError):
            MongoTemplateRepository(collection).replace(template, expected_version=1)

    def test_replace_missing(self, collection, template):
        collection.find_one_and_replace.return_value = None
        collection.find_one.return_value = None

        with pytest.raises(TemplateNotFoundError):
            MongoTemplateRepository(collection).replace(template, expected_version=1)

    def test_list_active_by_category(self, collection, template):
        collection.find.return_value = [stored(template, "template_id")]

        found = MongoTemplateRepository(collection).list_active(WorkflowCategory.LEAVE_REQUEST)

        collection.find.assert_called_once_with({"is_active": True, "category": "leave_request"})
        assert found == [template]


class TestMongoEventOutboxRepository:

    def test_mark_dispatched(self, collection):
        collection.update_one.return_value.matched_count = 1

        MongoEventOutboxRepository(collection).mark_dispatched("EVT-1")

        query, update = collection.update_one.call_args[0]
        assert query == {"event_id": "EVT-1"}
        assert "dispatched_at" in update["$set"]

    def test_list_undispatched(self, collection):
        event = WorkflowEvent(
            event_id="EVT-1", event_type=EventType.ESCALATED, instance_id="WFI-1", template_id="WFT-1",
            reference_type="leave_request", reference_id="LR-1", occurred_at=NOW
        )
        collection.find.return_value.sort.return_value.limit.return_value = [stored(event, "event_id")]

        found = MongoEventOutboxRepository(collection).list_undispatched(limit=50)

        collection.find.assert_called_once_with({"dispatched_at": None})
        assert found == [event]
