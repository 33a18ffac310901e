"""Shared pytest fixtures and utilities for receipt staging tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from receipt_staging import cli, constants, core_logic, data_manager, workbook_backend  # noqa: E402
from receipt_staging.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_BRANCH_ID = "CN1"
OTHER_BRANCH_ID = "CN2"
START_OF_DAY = datetime(2024, 5, 1, 9, 0, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "BranchID = {branch_id}\n"
    "Role = {role}\n"
)

SEED_PARTS = (
    data_manager.PartRow("P001", "Brake pad", "BP-01", "Brakes", DEFAULT_BRANCH_ID, 100_000, 150_000, 135_000, 4),
    data_manager.PartRow("P001", "Brake pad", "BP-01", "Brakes", OTHER_BRANCH_ID, 110_000, 160_000, 144_000, 2),
    data_manager.PartRow("P002", "Oil filter", "OF-02", "Filters", DEFAULT_BRANCH_ID, 40_000, 60_000, 54_000, 10),
    data_manager.PartRow("P003", "Spark plug", "SP-03", None, OTHER_BRANCH_ID, 25_000, 37_500, 33_750, 7),
)
SEED_SUPPLIERS = (
    data_manager.SupplierRow("NCC001", "Saigon Parts", "0912345678", "District 1", None),
    data_manager.SupplierRow("NCC002", "Hanoi Motors", None, None, "Pays on delivery"),
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    branch_id: str
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Run every test from an empty directory so config discovery is predictable."""

    workdir = tmp_path / "cwd"
    workdir.mkdir()
    monkeypatch.chdir(workdir)


# ---------------------------------------------------------------------------
# Workbook and configuration fixtures
# ---------------------------------------------------------------------------


def seed_workbook(path: Path) -> None:
    """Append the sample parts and suppliers to the workbook at ``path``."""

    workbook = data_manager.open_workbook(path)
    for row in SEED_PARTS:
        data_manager.append_part(workbook, row)
    for supplier in SEED_SUPPLIERS:
        data_manager.append_supplier(workbook, supplier)
    data_manager.save_workbook(workbook, path)


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized receipts workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "receipts.xlsx",
        seeded: bool = True,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        if seeded:
            seed_workbook(workbook_path)
        return workbook_path

    return _create_workbook


@pytest.fixture
def receipts_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh seeded workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        branch_id: str = DEFAULT_BRANCH_ID,
        role: str = "manager",
        limits: Optional[Dict[str, object]] = None,
        seeded: bool = True,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}", seeded=seeded)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        text = _CONFIG_TEMPLATE.format(
            data_file=data_file_entry,
            store_name=store_name,
            schema_version=schema_version,
            branch_id=branch_id,
            role=role,
        )
        if limits:
            text += "\n[Limits]\n" + "".join(f"{key} = {value}\n" for key, value in limits.items())
        config_path = bundle_dir / "config.ini"
        config_path.write_text(text, encoding="utf-8")
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            branch_id=branch_id,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    return config_factory()


@pytest.fixture
def config_file(config_bundle: ConfigBundle) -> Path:
    """Convenience fixture returning only the config path."""

    return config_bundle.config_path


@pytest.fixture
def runtime_context(config_file: Path) -> workbook_backend.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = workbook_backend.load_runtime_context(config_file)
    workbook_backend.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


@dataclass
class FrozenClock:
    """Mutable "now" shared by the patched ``datetime`` classes."""

    moment: datetime

    def advance(self, **delta: float) -> datetime:
        self.moment = self.moment + timedelta(**delta)
        return self.moment


@pytest.fixture
def frozen_clock(monkeypatch: pytest.MonkeyPatch) -> FrozenClock:
    """Patch ``datetime.now`` in the engine and the workbook adapters."""

    clock = FrozenClock(START_OF_DAY)

    class _FixedDateTime(datetime):
        @classmethod
        def now(cls, tz=None):
            assert tz is UTC
            return clock.moment

    monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
    monkeypatch.setattr(workbook_backend, "datetime", _FixedDateTime)
    return clock


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


def make_item(
    item_id: str,
    name: str,
    sku: str,
    *,
    cost: int = 0,
    retail: int = 0,
    wholesale: int = 0,
    branch_id: str = DEFAULT_BRANCH_ID,
) -> data_manager.CatalogItem:
    return data_manager.CatalogItem(
        item_id=item_id,
        name=name,
        sku=sku,
        cost_price={branch_id: cost},
        retail_price={branch_id: retail},
        wholesale_price={branch_id: wholesale},
    )


class MemoryDraftStore:
    """Dict-backed draft store that can be told to fail."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.set_calls: List[str] = []
        self.delete_calls: List[str] = []
        self.fail_writes = False
        self.fail_reads = False

    def get(self, key: str) -> Optional[str]:
        if self.fail_reads:
            raise core_logic.PersistenceError("store offline")
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise core_logic.PersistenceError("disk full")
        self.set_calls.append(key)
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.delete_calls.append(key)
        self.data.pop(key, None)


class FakeCatalog:
    """Catalog provider and item creator over a plain list."""

    def __init__(self, items: List[data_manager.CatalogItem]) -> None:
        self.items = list(items)
        self.created: List[core_logic.NewItemSpec] = []
        self.fail_creation = False

    def list_items(self, location_id: str) -> List[data_manager.CatalogItem]:
        return list(self.items)

    def create_item(self, spec: core_logic.NewItemSpec, location_id: str) -> data_manager.CatalogItem:
        if self.fail_creation:
            raise core_logic.CreationError("catalog rejected the item")
        self.created.append(spec)
        item = make_item(
            f"NEW{len(self.created)}",
            spec.name,
            spec.sku or "",
            cost=int(spec.import_price),
            retail=int(spec.retail_price or 0),
            wholesale=int(spec.wholesale_price or 0),
            branch_id=location_id,
        )
        self.items.append(item)
        return item


class FakeSupplierDirectory:
    def __init__(self, suppliers: List[data_manager.SupplierRow]) -> None:
        self.suppliers = list(suppliers)
        self.fail_creation = False

    def list_suppliers(self) -> List[data_manager.SupplierRow]:
        return list(self.suppliers)

    def create_supplier(self, spec: core_logic.SupplierSpec) -> data_manager.SupplierRow:
        if self.fail_creation:
            raise core_logic.CreationError("directory offline")
        row = data_manager.SupplierRow(f"NCC9{len(self.suppliers)}", spec.name, spec.phone, spec.address, spec.note)
        self.suppliers.append(row)
        return row


@dataclass
class RecordingSink:
    """Commit sink that records requests and returns a fixed reference."""

    reference: str = "NH-20240501-001"
    fail: bool = False
    requests: List[core_logic.CommitRequest] = field(default_factory=list)

    def commit(self, request: core_logic.CommitRequest) -> str:
        if self.fail:
            raise core_logic.CommitError("sink unavailable")
        self.requests.append(request)
        return self.reference


@pytest.fixture
def catalog_items() -> List[data_manager.CatalogItem]:
    return [
        make_item("P001", "Brake pad", "BP-01", cost=100_000, retail=150_000, wholesale=135_000),
        make_item("P002", "Oil filter", "OF-02", cost=40_000, retail=60_000, wholesale=54_000),
        make_item("P003", "Spark plug", "SP-03"),
    ]


@pytest.fixture
def fake_catalog(catalog_items: List[data_manager.CatalogItem]) -> FakeCatalog:
    return FakeCatalog(catalog_items)


@pytest.fixture
def draft_store() -> MemoryDraftStore:
    return MemoryDraftStore()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def supplier_directory() -> FakeSupplierDirectory:
    return FakeSupplierDirectory(list(SEED_SUPPLIERS))


@pytest.fixture
def session_factory(
    fake_catalog: FakeCatalog,
    draft_store: MemoryDraftStore,
    sink: RecordingSink,
    supplier_directory: FakeSupplierDirectory,
) -> Callable[..., core_logic.StagingSession]:
    """Build sessions sharing the same fakes, as a restarted process would."""

    def _create(location_id: str = DEFAULT_BRANCH_ID, **overrides) -> core_logic.StagingSession:
        options = dict(
            catalog=fake_catalog,
            item_creator=fake_catalog,
            suppliers=supplier_directory,
            store=draft_store,
            sink=sink,
        )
        options.update(overrides)
        return core_logic.StagingSession(location_id, **options)

    return _create


@pytest.fixture
def session(session_factory: Callable[..., core_logic.StagingSession]) -> core_logic.StagingSession:
    return session_factory()


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="receipt-cli", description="Receipt CLI")


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
