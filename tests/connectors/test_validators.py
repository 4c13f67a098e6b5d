"""Tests for attrspine.connectors.validators module."""

from attrspine.connectors.validators import CallableValidator, ConnectionValidator, NullValidator
from attrspine.core.errors import ValidationError
from attrspine.core.result import Ok
from tests._support.fakes import FakeProvider


class TestConnectionValidator:
    def test_acquire_and_release(self):
        provider = FakeProvider()
        assert ConnectionValidator(provider).validate() == Ok(None)
        assert provider.acquired == provider.released == 1

    def test_acquire_failure(self):
        provider = FakeProvider()
        provider.acquire_error = OSError("refused")
        outcome = ConnectionValidator(provider).validate()
        assert outcome.is_err()
        assert isinstance(outcome.error, ValidationError)
        assert "refused" in outcome.error.message

    def test_probe_false_is_failure_and_releases(self):
        provider = FakeProvider()
        outcome = ConnectionValidator(provider, probe=lambda conn: False, name="ping").validate()
        assert isinstance(outcome.error, ValidationError)
        assert outcome.error.message.startswith("ping failed")
        assert provider.released == 1

    def test_probe_raising_is_failure(self):
        def probe(conn):
            raise RuntimeError("no such table")

        outcome = ConnectionValidator(FakeProvider(), probe=probe).validate()
        assert isinstance(outcome.error.cause, RuntimeError)

    def test_probe_none_is_success(self):
        assert ConnectionValidator(FakeProvider(), probe=lambda conn: None).validate().is_ok()


class TestCallableValidator:
    def test_true(self):
        assert CallableValidator(lambda: True).validate().is_ok()

    def test_false(self):
        def directory_reachable():
            return False

        outcome = CallableValidator(directory_reachable).validate()
        assert outcome.error.message == "directory_reachable failed"

    def test_raises(self):
        def check():
            raise ValidationError("already a validation error")

        outcome = CallableValidator(check).validate()
        assert outcome.error.message == "already a validation error"


class TestNullValidator:
    def test_always_ok(self):
        assert NullValidator().validate() == Ok(None)
