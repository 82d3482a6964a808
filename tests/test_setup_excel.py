"""Tests for the workbook bootstrap script."""

from __future__ import annotations

from pathlib import Path

import openpyxl
import pytest

from poultry_ledger import setup_excel
from poultry_ledger.constants import SheetName


def _write_config(directory: Path, data_file: str = "ledger.xlsx") -> Path:
    config_path = directory / "config.ini"
    config_path.write_text(
        "[System]\n" f"DataFile = {data_file}\n" "BusinessName = Green Valley Feeds\n" "SchemaVersion = 1.0.0\n",
        encoding="utf-8",
    )
    return config_path


def test_create_master_workbook_writes_headers_and_dealers(tmp_path):
    """Every sheet gets its header row and seeded dealers land in Profiles."""

    path = setup_excel.create_master_workbook(
        tmp_path / "ledger.xlsx",
        dealers=[setup_excel.DealerSeed(user_id="D-1", name="Green Valley", is_premium=True)],
    )

    workbook = openpyxl.load_workbook(path)
    assert set(workbook.sheetnames) == set(setup_excel.SHEET_COLUMNS)
    for sheet_name, columns in setup_excel.SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet_name][1]]
        assert header == list(columns)
    profile = [cell.value for cell in workbook[SheetName.PROFILES.value][2]]
    assert profile[:3] == ["D-1", "Green Valley", "dealer"]
    assert profile[-1] is True


def test_create_master_workbook_refuses_overwrite(tmp_path):
    """An existing workbook is kept unless overwrite is requested."""

    target = setup_excel.create_master_workbook(tmp_path / "ledger.xlsx")

    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(target)
    assert setup_excel.create_master_workbook(target, overwrite=True) == target


def test_load_settings_resolves_relative_data_file(tmp_path):
    """Relative DataFile entries resolve against the config directory."""

    settings = setup_excel.load_settings(_write_config(tmp_path))

    assert settings.data_file == (tmp_path / "ledger.xlsx").resolve()
    assert settings.business_name == "Green Valley Feeds"


def test_main_seeds_dealer_and_reports_success(tmp_path, capsys):
    """The script creates the workbook and seeds the requested dealer."""

    config_path = _write_config(tmp_path)

    exit_code = setup_excel.main(["--config", str(config_path), "--dealer-id", "D-9", "--dealer-name", "Hill Farms"])

    assert exit_code == 0
    assert "[SUCCESS]" in capsys.readouterr().out
    workbook = openpyxl.load_workbook(tmp_path / "ledger.xlsx")
    assert workbook[SheetName.PROFILES.value].cell(row=2, column=2).value == "Hill Farms"


def test_main_refuses_existing_workbook_without_force(tmp_path, capsys):
    """A second run fails unless --force is given."""

    config_path = _write_config(tmp_path)
    assert setup_excel.main(["--config", str(config_path)]) == 0

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_main_reports_missing_config(tmp_path, capsys):
    """A missing config file is reported as an error exit."""

    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
