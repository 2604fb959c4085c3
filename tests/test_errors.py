"""
Error Taxonomy Tests
--------------------
Categories, id validation and user-facing messages.
"""

import logging
import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import (
    ErrorCategory,
    ErrorHandler,
    InvalidInputError,
    MemoryNotFoundError,
    NotFoundError,
    SessionCancelledError,
    UnavailableError,
    classify_exception,
    validate_entity_id,
)


class TestCategories:

    def test_error_categories(self):
        assert NotFoundError("x").category == ErrorCategory.NOT_FOUND
        assert MemoryNotFoundError("1_2_3").category == ErrorCategory.NOT_FOUND
        assert InvalidInputError("x").category == ErrorCategory.INVALID_INPUT
        assert UnavailableError("x").category == ErrorCategory.UNAVAILABLE
        assert SessionCancelledError("x").category == ErrorCategory.CANCELLED

    def test_details(self):
        error = UnavailableError("llm down", backend="llm")
        assert error.backend == "llm"
        assert error.details == {"backend": "llm"}
        assert "UNAVAILABLE" in repr(error)

    @pytest.mark.parametrize("exc, category", [
        (KeyError("k"), ErrorCategory.NOT_FOUND),
        (ValueError("v"), ErrorCategory.INVALID_INPUT),
        (TypeError("t"), ErrorCategory.INVALID_INPUT),
        (ConnectionError("c"), ErrorCategory.UNAVAILABLE),
        (InvalidInputError("i"), ErrorCategory.INVALID_INPUT),
    ])
    def test_classify(self, exc, category):
        assert classify_exception(exc) == category


class TestValidateEntityId:

    @pytest.mark.parametrize("value", [0, 1, 10 ** 12])
    def test_accepts_non_negative_ints(self, value):
        assert validate_entity_id(value, "id") == value

    @pytest.mark.parametrize("value", [-1, 1.0, "3", None, False])
    def test_rejects_others(self, value):
        with pytest.raises(InvalidInputError) as exc_info:
            validate_entity_id(value, "conversation_id")
        assert exc_info.value.field == "conversation_id"


class TestErrorHandler:

    def test_user_messages(self):
        handler = ErrorHandler()

        assert handler.handle(InvalidInputError("content must not be empty")) == "content must not be empty"
        assert "unavailable" in handler.handle(UnavailableError("secret backend detail"))
        assert "secret" not in handler.handle(RuntimeError("secret"))

    def test_stats_and_clear(self):
        handler = ErrorHandler()
        handler.handle(NotFoundError("a"))
        handler.handle(NotFoundError("b"))
        handler.handle(UnavailableError("c"))

        assert handler.get_error_stats() == {"NOT_FOUND": 2, "UNAVAILABLE": 1}

        handler.clear_history()
        assert handler.get_error_stats() == {}

    def test_history_bounded(self):
        handler = ErrorHandler(max_history=3)
        for i in range(10):
            handler.handle(NotFoundError(str(i)))

        assert handler.get_error_stats() == {"NOT_FOUND": 3}

    def test_unavailable_logged_as_error(self, caplog):
        handler = ErrorHandler()
        with caplog.at_level(logging.INFO, logger="starchat.errors"):
            handler.handle(UnavailableError("db down"))

        assert caplog.records[-1].levelno == logging.ERROR
