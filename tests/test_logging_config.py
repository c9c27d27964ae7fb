"""
Tests for structured logging
"""

import json
import logging
import sys
import pytest

from loan_servicing.config import LoanServicingConfig
from loan_servicing.logging_config import (
    JSONFormatter, setup_logging, configure_from_settings, get_logger, log_action, ROOT_LOGGER
)


class ListHandler(logging.Handler):
    """Collects records for inspection"""

    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestJSONFormatter:
    """Test the JSON log line layout"""

    def make_record(self, **extra):
        record = logging.LogRecord(
            name="loan_servicing.loans", level=logging.INFO, pathname=__file__, lineno=1,
            msg="Payment applied to EMI %d", args=(3,), exc_info=None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_servicing.loans"
        assert entry["message"] == "Payment applied to EMI 3"
        assert "timestamp" in entry
        assert "user_id" not in entry

    def test_structured_fields(self):
        record = self.make_record(user_id="operator1", action="apply_payment",
                                  resource="installment:L1_3", extra={"status": "Paid"})
        entry = json.loads(JSONFormatter().format(record))
        assert entry["user_id"] == "operator1"
        assert entry["action"] == "apply_payment"
        assert entry["resource"] == "installment:L1_3"
        assert entry["extra"] == {"status": "Paid"}

    def test_exception_included(self):
        try:
            raise ValueError("bad amount")
        except ValueError:
            record = logging.LogRecord(
                name="loan_servicing", level=logging.ERROR, pathname=__file__, lineno=1,
                msg="failed", args=(), exc_info=sys.exc_info()
            )
        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad amount" in entry["exception"]


class TestLogAction:
    """Test log_action"""

    def setup_method(self):
        """Set up test fixtures"""
        self.logger = logging.getLogger("loan_servicing.test_log_action")
        self.logger.setLevel(logging.DEBUG)
        self.handler = ListHandler()
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_fields_attached(self):
        log_action(self.logger, "info", "Loan created", user_id="op1", action="create_loan",
                   resource="loan:L1", extra={"tenure_months": 12})
        record = self.handler.records[0]
        assert record.levelno == logging.INFO
        assert record.user_id == "op1"
        assert record.action == "create_loan"
        assert record.extra == {"tenure_months": 12}

    def test_missing_fields_omitted(self):
        log_action(self.logger, "warning", "rejected")
        record = self.handler.records[0]
        assert record.levelno == logging.WARNING
        assert not hasattr(record, "user_id")


class TestSetupLogging:
    """Test handler configuration"""

    def teardown_method(self):
        logger = logging.getLogger(ROOT_LOGGER)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True
        logger.setLevel(logging.NOTSET)

    def test_json_handler(self):
        logger = setup_logging("debug")
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_no_duplicate_handlers(self):
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_text_format(self):
        logger = setup_logging(log_format="text")
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_file_output(self, tmp_path):
        log_file = tmp_path / "servicing.log"
        settings = LoanServicingConfig(log_level="INFO", log_file=str(log_file), _env_file=None)
        configure_from_settings(settings)

        get_logger("loan_servicing.loans").info("Loan created: LN-1")
        for handler in logging.getLogger(ROOT_LOGGER).handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "Loan created: LN-1"
        assert entry["logger"] == "loan_servicing.loans"
