"""Persistent ledger and config storage using JSON files."""

import json
from pathlib import Path
from typing import Any, List
from .models import Config, LedgerSheet


class Storage:
    """File-based storage for the ledger book and configuration."""

    def __init__(self, data_dir: str = ".ledgerq"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.ledger_file = self.data_dir / "ledger.json"
        self.config_file = self.data_dir / "config.json"

        # Initialize files if they don't exist
        if not self.ledger_file.exists():
            self._write_json(self.ledger_file, {"sheets": []})
        if not self.config_file.exists():
            self._write_json(self.config_file, Config().model_dump())

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return {}
        with open(file_path, "r") as f:
            return json.load(f)

    def get_sheets(self) -> List[LedgerSheet]:
        """Get all ledger sheets, oldest first."""
        data = self._read_json(self.ledger_file)
        return [LedgerSheet(**sheet) for sheet in data.get("sheets", [])]

    def save_sheets(self, sheets: List[LedgerSheet]) -> None:
        """Replace the stored ledger book."""
        self._write_json(
            self.ledger_file,
            {"sheets": [sheet.model_dump(mode="json") for sheet in sheets]},
        )

    def get_config(self) -> Config:
        """Get current configuration."""
        config_data = self._read_json(self.config_file)
        return Config(**config_data)

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        self._write_json(self.config_file, config.model_dump())
