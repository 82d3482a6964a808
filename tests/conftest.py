"""Shared pytest fixtures and utilities for poultry ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from poultry_ledger import cli, constants, core_logic, data_manager, farmers, purchase_orders  # noqa: E402
from poultry_ledger.setup_excel import DealerSeed, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEALER_ID = "D-001"
PREMIUM_DEALER_ID = "D-PREMIUM"
DEFAULT_DEALERS = (
    DealerSeed(user_id=DEALER_ID, name="Green Valley Feeds"),
    DealerSeed(user_id=PREMIUM_DEALER_ID, name="Sunrise Hatcheries", is_premium=True),
)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Ledger]\n"
    "CurrencySymbol = ₹\n"
    "PageSize = {page_size}\n"
    "GlobalPageSize = 100\n"
    "CommitAttempts = {commit_attempts}\n\n"
    "[Farmers]\n"
    "FreePlanLimit = {free_plan_limit}\n\n"
    "[Notifications]\n"
    "Enabled = {notifications_enabled}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        dealers=DEFAULT_DEALERS,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, dealers=dealers, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Green Valley Feeds",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        page_size: int = 50,
        commit_attempts: int = 3,
        free_plan_limit: int = 3,
        notifications_enabled: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                page_size=page_size,
                commit_attempts=commit_attempts,
                free_plan_limit=free_plan_limit,
                notifications_enabled="true" if notifications_enabled else "false",
            ),
            encoding="utf-8",
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Domain seeding helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def add_farmer(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.FarmerRow]:
    """Register farmers under the default dealer."""

    def _add(
        farmer_id: str = "F-RAVI",
        *,
        name: str = "Ravi Kumar",
        dealer_id: str = DEALER_ID,
    ) -> data_manager.FarmerRow:
        draft = farmers.FarmerDraft(
            name=name,
            location="Namakkal",
            dealer_id=dealer_id,
            farmer_id=farmer_id,
        )
        return farmers.create_farmer(runtime_context, draft)

    return _add


@pytest.fixture
def stock_item(runtime_context: core_logic.RuntimeContext) -> Callable[..., data_manager.InventoryItemRow]:
    """Stock one inventory item for the default dealer via a purchase order."""

    def _stock(
        name: str = "Feed",
        *,
        quantity: Decimal = Decimal("10"),
        purchase_price: Decimal = Decimal("60"),
        sales_price: Decimal = Decimal("100"),
        category: constants.InventoryCategory = constants.InventoryCategory.FEED,
    ) -> data_manager.InventoryItemRow:
        purchase_order_id = purchase_orders.create_purchase_order(
            runtime_context,
            [
                purchase_orders.PurchaseItemDraft(
                    name=name,
                    category=category,
                    quantity=quantity,
                    unit="bag",
                    purchase_price=purchase_price,
                    sales_price=sales_price,
                )
            ],
            purchase_source="Acme Mills",
            owner_id=DEALER_ID,
        )
        return next(
            item
            for item in core_logic.list_records(runtime_context, data_manager.INVENTORY_SHEET)
            if item.purchase_order_id == purchase_order_id
        )

    return _stock


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="poultry-ledger", description="Poultry ledger CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        business_name="Green Valley Feeds",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply
