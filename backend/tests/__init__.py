"""
Test Suite

This module contains all tests for the approval workflow engine.

Structure:
    tests/
    ├── __init__.py          # This file
    ├── conftest.py          # Pytest fixtures
    ├── helpers.py           # Fake clock and small builders
    ├── unit/                # Unit tests
    │   ├── test_main.py     # Wiring and lifecycle
    │   ├── test_engine/     # Engine tests
    │   ├── test_services/   # Service layer tests
    │   ├── test_scheduler/  # SLA clock tests
    │   ├── test_repositories/
    │   └── test_utils/      # Utility tests
    └── integration/         # End-to-end workflow scenarios

To run tests:
    pytest backend/tests/
    pytest backend/tests/unit/
    pytest backend/tests/integration/
"""
