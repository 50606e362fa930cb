from __future__ import annotations

import json
import logging

from siteproof.errors import ConflictError, ForbiddenError, InternalError, NotFoundError, ValidationFailed
from siteproof.logging_config import JSONFormatter, ReadableFormatter, configure_logging


def test_not_found_hides_identifier():
    error = NotFoundError("Lot", "lot-123")
    assert error.status_code == 404
    assert error.to_dict() == {"message": "Lot not found", "code": "NOT_FOUND"}
    assert error.resource_id == "lot-123"


def test_field_is_merged_into_details():
    error = ValidationFailed("Area lots require a zone", "AREA_ZONE_REQUIRED", field="areaZone")
    assert error.to_dict()["details"] == {"field": "areaZone"}

    conflict = ConflictError("Lot was modified", "LOT_MODIFIED", field="expectedUpdatedAt", details={"currentUpdatedAt": "x"})
    assert conflict.status_code == 409
    assert conflict.details == {"currentUpdatedAt": "x", "field": "expectedUpdatedAt"}


def test_status_codes():
    assert ForbiddenError().status_code == 403
    assert ForbiddenError().code == "FORBIDDEN"
    assert InternalError().to_dict() == {"message": "Internal server error", "code": "INTERNAL_ERROR"}


def _record(**extra):
    record = logging.LogRecord("siteproof.services.lots", logging.INFO, __file__, 1, "Lot %s created", ("LOT-001",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context():
    line = JSONFormatter().format(_record(project_id="proj-1", entity="lot", unrelated="skip"))
    entry = json.loads(line)
    assert entry["message"] == "Lot LOT-001 created"
    assert entry["level"] == "INFO"
    assert entry["project_id"] == "proj-1"
    assert entry["entity"] == "lot"
    assert "unrelated" not in entry


def test_readable_formatter_appends_context():
    line = ReadableFormatter().format(_record(user_id="user-1"))
    assert line.endswith("siteproof.services.lots: Lot LOT-001 created [user_id=user-1]")


def test_configure_logging_installs_one_handler():
    root = logging.getLogger()
    previous_handlers, previous_level = list(root.handlers), root.level
    try:
        configure_logging(level="debug", fmt="json")
        configure_logging(level="debug", fmt="json")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)
