"""Unit tests verifying the business logic layer with a mocked data access layer."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import UTC, datetime
from unittest.mock import Mock

import pytest

from warung_pos import constants, core_logic, data_manager, log, set_log_level
from warung_pos.events import EventChannel
from warung_pos.constants import PaymentMethod, Signal
from conftest import make_product, make_transaction, utc_ms


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        store_name="Warung",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_load_runtime_context_accepts_shared_channel(monkeypatch, tmp_path):
    channel = EventChannel()
    monkeypatch.setattr(data_manager, "find_config_file", Mock(return_value=tmp_path / "config.ini"))
    monkeypatch.setattr(data_manager, "read_config", Mock())
    monkeypatch.setattr(
        data_manager,
        "parse_settings",
        Mock(return_value=data_manager.ConfigSettings(tmp_path / "x.xlsx", "W", "1.0.0")),
    )
    monkeypatch.setattr(data_manager, "open_workbook", Mock())

    context = core_logic.load_runtime_context(events=channel)

    assert context.events is channel


def test_load_runtime_context_applies_configured_log_level(monkeypatch, tmp_path):
    monkeypatch.setattr(data_manager, "find_config_file", Mock(return_value=tmp_path / "config.ini"))
    monkeypatch.setattr(data_manager, "read_config", Mock())
    monkeypatch.setattr(
        data_manager,
        "parse_settings",
        Mock(return_value=data_manager.ConfigSettings(tmp_path / "x.xlsx", "W", "1.0.0", log_level="WARNING")),
    )
    monkeypatch.setattr(data_manager, "open_workbook", Mock())
    set_level = Mock()
    monkeypatch.setattr(core_logic, "set_log_level", set_level)

    core_logic.load_runtime_context()

    set_level.assert_called_once_with("WARNING")


def test_set_log_level_updates_logger_and_handlers():
    original = log.level
    try:
        set_log_level("debug")

        assert log.level == logging.DEBUG
        assert all(handler.level == logging.DEBUG for handler in log.handlers)
    finally:
        set_log_level(logging.getLevelName(original))


def test_set_log_level_rejects_unknown_name():
    with pytest.raises(ValueError):
        set_log_level("chatty")


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_contexts_get_private_channels(settings, workbook):
    first = core_logic.RuntimeContext(settings=settings, workbook=workbook)
    second = core_logic.RuntimeContext(settings=settings, workbook=workbook)

    assert first.events is not second.events


# ---------------------------------------------------------------------------
# Cached reads
# ---------------------------------------------------------------------------


def test_list_transactions_reuses_cache_between_calls(monkeypatch, context):
    transactions = [make_transaction("T-cache", utc_ms(2024, 6, 15), 1000)]
    iter_mock = Mock(return_value=transactions)
    monkeypatch.setattr(data_manager, "iter_transactions", iter_mock)

    first = core_logic.list_transactions(context)
    second = core_logic.list_transactions(context)

    assert first == transactions
    assert second == transactions
    assert first is not second
    iter_mock.assert_called_once_with(context.workbook)


def test_list_products_reuses_cache_between_calls(monkeypatch, context):
    products = [make_product("P1", 3, 1)]
    iter_mock = Mock(return_value=products)
    monkeypatch.setattr(data_manager, "iter_products", iter_mock)

    core_logic.list_products(context)
    result = core_logic.list_products(context)

    assert result == products
    iter_mock.assert_called_once_with(context.workbook)


def test_get_product_missing_raises(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.get_product(context, "NOPE")


def test_get_user_profile_is_cached(monkeypatch, context):
    profile = data_manager.UserProfile(warung_id="WRG-1", role="staff")
    read_mock = Mock(return_value=profile)
    monkeypatch.setattr(data_manager, "read_user_profile", read_mock)

    assert core_logic.get_user_profile(context) is profile
    assert core_logic.get_user_profile(context) is profile
    read_mock.assert_called_once_with(context.workbook)


# ---------------------------------------------------------------------------
# Writers
# ---------------------------------------------------------------------------


def test_record_transaction_appends_then_publishes(monkeypatch, context):
    """Subscribers must observe the write as already applied."""

    append = Mock()
    monkeypatch.setattr(data_manager, "append_transaction", append)
    monkeypatch.setattr(data_manager, "iter_transactions", Mock(return_value=[]))
    core_logic.list_transactions(context)
    observed = []
    context.events.subscribe(
        Signal.TRANSACTIONS_CHANGED,
        lambda: observed.append((append.called, "transactions" in context._cache)),
    )
    moment = datetime(2024, 6, 15, 8, 0, tzinfo=UTC)

    transaction = core_logic.record_transaction(
        context,
        core_logic.SaleCommand(total_amount=50000, payment_method=PaymentMethod.CASH, timestamp=moment),
    )

    append.assert_called_once_with(context.workbook, transaction)
    assert observed == [(True, False)]
    assert transaction.timestamp_ms == utc_ms(2024, 6, 15, 8, 0)
    assert transaction.payment_method == "cash"
    assert transaction.transaction_id == "T20240615080000000000"


def test_record_transaction_suffixes_clashing_id(monkeypatch, context):
    moment = datetime(2024, 6, 15, 8, 0, tzinfo=UTC)
    monkeypatch.setattr(
        data_manager,
        "iter_transactions",
        Mock(return_value=[make_transaction("T20240615080000000000", utc_ms(2024, 6, 15, 8, 0), 100)]),
    )
    monkeypatch.setattr(data_manager, "append_transaction", Mock())

    transaction = core_logic.record_transaction(
        context,
        core_logic.SaleCommand(total_amount=200, payment_method=PaymentMethod.CASH, timestamp=moment),
    )

    assert transaction.transaction_id == "T20240615080000000000-2"


def test_record_transaction_rejects_negative_amount(monkeypatch, context):
    append = Mock()
    monkeypatch.setattr(data_manager, "append_transaction", append)

    with pytest.raises(ValueError):
        core_logic.record_transaction(
            context,
            core_logic.SaleCommand(total_amount=-1, payment_method=PaymentMethod.QRIS),
        )
    append.assert_not_called()


def test_record_transaction_rejects_unknown_method(monkeypatch, context):
    monkeypatch.setattr(data_manager, "append_transaction", Mock())

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.record_transaction(
            context,
            core_logic.SaleCommand(total_amount=10, payment_method="voucher"),
        )


def test_add_product_rejects_duplicates(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[make_product("P1", 1, 1)]))
    append = Mock()
    monkeypatch.setattr(data_manager, "append_product", append)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.add_product(context, product_id="P1", product_name="Dup")
    append.assert_not_called()


def test_add_product_publishes_transactions_changed(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[]))
    monkeypatch.setattr(data_manager, "append_product", Mock())
    calls = []
    context.events.subscribe(Signal.TRANSACTIONS_CHANGED, lambda: calls.append(1))

    product = core_logic.add_product(
        context,
        product_id="P2",
        product_name="Indomie",
        stock=12,
        min_stock_alert=4,
    )

    assert product == data_manager.ProductRecord("P2", "Indomie", 12, 4)
    assert calls == [1]


def test_set_product_stock_updates_and_publishes(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[make_product("P1", 9, 2)]))
    update = Mock()
    monkeypatch.setattr(data_manager, "update_product", update)
    calls = []
    context.events.subscribe(Signal.TRANSACTIONS_CHANGED, lambda: calls.append(1))

    product = core_logic.set_product_stock(context, "P1", 2)

    update.assert_called_once_with(context.workbook, "P1", field_values={"Stock": 2})
    assert product.stock == 2
    assert calls == [1]
    assert "products" not in context._cache


def test_adjust_product_stock_refuses_negative_result(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[make_product("P1", 1, 0)]))
    update = Mock()
    monkeypatch.setattr(data_manager, "update_product", update)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.adjust_product_stock(context, "P1", -2)
    update.assert_not_called()


def test_adjust_product_stock_applies_delta(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[make_product("P1", 4, 0)]))
    update = Mock()
    monkeypatch.setattr(data_manager, "update_product", update)

    product = core_logic.adjust_product_stock(context, "P1", -3)

    assert product.stock == 1
    update.assert_called_once_with(context.workbook, "P1", field_values={"Stock": 1})


def test_force_owner_role_publishes_profile_changed(monkeypatch, context):
    monkeypatch.setattr(
        data_manager,
        "read_user_profile",
        Mock(return_value=data_manager.UserProfile(warung_id="WRG-1", role="staff")),
    )
    write = Mock()
    monkeypatch.setattr(data_manager, "write_user_profile", write)
    profile_calls = []
    transaction_calls = []
    context.events.subscribe(Signal.PROFILE_CHANGED, lambda: profile_calls.append(1))
    context.events.subscribe(Signal.TRANSACTIONS_CHANGED, lambda: transaction_calls.append(1))

    profile = core_logic.force_owner_role(context)

    assert profile.role == "owner"
    write.assert_called_once_with(context.workbook, profile)
    assert profile_calls == [1]
    assert transaction_calls == []


def test_force_owner_role_without_profile_raises(monkeypatch, context):
    monkeypatch.setattr(data_manager, "read_user_profile", Mock(return_value=None))

    with pytest.raises(core_logic.MissingReferenceError):
        core_logic.force_owner_role(context)


def test_save_user_profile_rejects_unknown_role(monkeypatch, context):
    write = Mock()
    monkeypatch.setattr(data_manager, "write_user_profile", write)

    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.save_user_profile(context, data_manager.UserProfile(warung_id="W", role="admin"))
    write.assert_not_called()


# ---------------------------------------------------------------------------
# Persistence and helpers
# ---------------------------------------------------------------------------


def test_persist_context_saves_to_configured_file(monkeypatch, context):
    save = Mock()
    monkeypatch.setattr(data_manager, "save_workbook", save)

    core_logic.persist_context(context)

    save.assert_called_once_with(context.workbook, destination=context.settings.data_file)


def test_refresh_context_keeps_channel(monkeypatch, context):
    fresh = Mock(name="fresh")
    monkeypatch.setattr(data_manager, "refresh_workbook", Mock(return_value=fresh))

    refreshed = core_logic.refresh_context(context)

    assert refreshed.workbook is fresh
    assert refreshed.events is context.events
    assert refreshed._cache == {}


def test_generate_transaction_id_is_sortable():
    earlier = core_logic.generate_transaction_id(when=datetime(2024, 1, 1, tzinfo=UTC))
    later = core_logic.generate_transaction_id(when=datetime(2024, 1, 2, tzinfo=UTC))

    assert earlier < later
    assert earlier.startswith("T2024")


def test_generate_transaction_id_skips_taken_values():
    moment = datetime(2024, 6, 15, 8, 0, tzinfo=UTC)
    taken = {"T20240615080000000000", "T20240615080000000000-2"}

    assert core_logic.generate_transaction_id(when=moment, taken=taken) == "T20240615080000000000-3"


def test_generate_transaction_id_uses_utc_for_naive_moments():
    naive = datetime(2024, 6, 15, 8, 0)

    assert core_logic.generate_transaction_id(when=naive) == core_logic.generate_transaction_id(
        when=naive.astimezone(UTC)
    )


def test_workbook_record_store_reads_through_context(monkeypatch, context):
    monkeypatch.setattr(data_manager, "iter_transactions", Mock(return_value=[make_transaction("T1", 0, 5)]))
    monkeypatch.setattr(data_manager, "iter_products", Mock(return_value=[make_product("P1", 0, 0)]))
    monkeypatch.setattr(data_manager, "read_user_profile", Mock(return_value=None))

    store = core_logic.WorkbookRecordStore(context)

    assert [t.transaction_id for t in store.get_transactions()] == ["T1"]
    assert [p.product_id for p in store.get_products()] == ["P1"]
    assert store.get_user_profile() is None
