"""Tests for inventory_spine.errors module."""

import pytest

from inventory_spine.errors import (
    ConfigurationError,
    CycleError,
    DuplicateIdentityError,
    ErrorCategory,
    ErrorContext,
    InventoryError,
    MissingDependencyError,
    NotAllowedPropertyError,
    ReferentialIntegrityError,
    ResolutionError,
    StorageError,
    SweeperNonUniformScopeKeyError,
    SweeperError,
    UnknownCollectionError,
    UnknownStrategyError,
    is_retryable,
    truncate_message,
)


class TestErrorContext:
    """Test ErrorContext dataclass."""

    def test_empty_context_serializes_to_empty_dict(self):
        assert ErrorContext().to_dict() == {}

    def test_only_set_fields_are_serialized(self):
        ctx = ErrorContext(collection="vms", attribute="host")
        assert ctx.to_dict() == {"collection": "vms", "attribute": "host"}


class TestInventoryError:
    """Test the base error."""

    def test_defaults(self):
        err = InventoryError("boom")
        assert err.message == "boom"
        assert err.category is ErrorCategory.INTERNAL
        assert err.retryable is False

    def test_with_context_known_and_unknown_keys(self):
        err = InventoryError("boom").with_context(collection="vms", table="vms_table")
        assert err.context.collection == "vms"
        assert err.context.metadata == {"table": "vms_table"}

    def test_cause_is_chained(self):
        cause = ValueError("inner")
        err = InventoryError("outer", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "ValueError: inner"

    def test_to_dict(self):
        err = ConfigurationError("bad").with_context(collection="hosts")
        assert err.to_dict() == {
            "error_type": "ConfigurationError",
            "message": "bad",
            "category": "CONFIG",
            "retryable": False,
            "context": {"collection": "hosts"},
        }


class TestTaxonomy:
    """Each failure family maps to its category."""

    @pytest.mark.parametrize(
        "error, category",
        [
            (UnknownStrategyError("saver", "nope", ["batch"]), ErrorCategory.CONFIG),
            (DuplicateIdentityError("vms", ("vm-1",)), ErrorCategory.CONFIG),
            (CycleError(["a", "b", "a"]), ErrorCategory.CONFIG),
            (ReferentialIntegrityError("dangling"), ErrorCategory.RESOLUTION),
            (StorageError("disk full"), ErrorCategory.STORAGE),
            (SweeperNonUniformScopeKeyError("keys"), ErrorCategory.COORDINATION),
        ],
    )
    def test_categories(self, error, category):
        assert error.category is category

    def test_configuration_errors_share_base(self):
        assert issubclass(CycleError, ConfigurationError)
        assert issubclass(MissingDependencyError, UnknownCollectionError)
        assert issubclass(NotAllowedPropertyError, ConfigurationError)
        assert issubclass(ReferentialIntegrityError, ResolutionError)
        assert issubclass(SweeperNonUniformScopeKeyError, SweeperError)

    def test_cycle_message_shows_path(self):
        err = CycleError(["vms", "hosts", "vms"])
        assert "vms -> hosts -> vms" in str(err)
        assert err.cycle == ["vms", "hosts", "vms"]

    def test_unknown_strategy_lists_allowed(self):
        err = UnknownStrategyError("saver", "fast", ["default", "batch"])
        assert "'fast'" in str(err)
        assert "default" in str(err)


class TestHelpers:
    def test_storage_errors_are_retryable(self):
        assert is_retryable(StorageError("timeout")) is True

    def test_configuration_errors_are_not_retryable(self):
        assert is_retryable(ConfigurationError("bad")) is False

    def test_foreign_exceptions_are_not_retryable(self):
        assert is_retryable(RuntimeError("x")) is False

    def test_truncate_message(self):
        assert truncate_message("x" * 200) == "x" * 150
        assert truncate_message("short", 3) == "sho"
