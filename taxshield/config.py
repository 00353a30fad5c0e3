"""YAML configuration loader for TaxShield.

Loads the two config files from the config/ directory:
  tax_lines.yaml  ordered reporting lines + fallback line
  rules.yaml      source priority, bill/receipt windows, category guesses
"""

from pathlib import Path

import yaml

from taxshield.database.models import SOURCES


class Config:
    """Loads and provides access to all YAML configuration files."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._tax_lines: dict | None = None
        self._rules: dict | None = None

    def _load(self, filename: str) -> dict | list:
        path = self.config_dir / filename
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        return data

    @property
    def tax_lines_raw(self) -> dict:
        """Return the raw YAML structure of tax_lines.yaml."""
        if self._tax_lines is None:
            data = self._load("tax_lines.yaml")
            if not isinstance(data, dict) or "lines" not in data:
                raise ValueError("tax_lines.yaml must define a 'lines' list")
            self._tax_lines = data
        return self._tax_lines

    @property
    def rules(self) -> dict:
        if self._rules is None:
            data = self._load("rules.yaml")
            if not isinstance(data, dict):
                raise ValueError("rules.yaml must be a mapping")
            self._rules = data
        return self._rules

    def tax_line_table(self):
        """Build the ordered TaxLineTable from tax_lines.yaml."""
        from taxshield.categorize.tax_lines import load_table

        raw = self.tax_lines_raw
        return load_table(raw["lines"], raw.get("fallback_line"))

    @property
    def source_priority(self) -> tuple[str, ...]:
        """Merge order of sources. Unknown names are rejected."""
        order = self.rules.get("source_priority", list(SOURCES))
        unknown = set(order) - set(SOURCES)
        if unknown:
            raise ValueError(f"Unknown sources in source_priority: {sorted(unknown)}")
        # Sources left out of the config still merge, after the listed ones
        return tuple(order) + tuple(s for s in SOURCES if s not in order)

    @property
    def due_soon_days(self) -> int:
        return int(self.rules.get("bills", {}).get("due_soon_days", 7))

    @property
    def upcoming_days(self) -> int:
        return int(self.rules.get("bills", {}).get("upcoming_days", 30))

    @property
    def receipt_window_days(self) -> int:
        return int(self.rules.get("receipts", {}).get("window_days", 7))

    @property
    def receipt_fallback_limit(self) -> int:
        return int(self.rules.get("receipts", {}).get("fallback_limit", 5))

    @property
    def category_guesses(self) -> list[dict]:
        """Keyword → category rules for bank-feed records without a category."""
        return self.rules.get("category_guesses", [])

    @property
    def feed_category_map(self) -> dict[str, str]:
        """bank-sync-B top-level category -> ledger category."""
        return self.rules.get("feed_category_map", {})

    @property
    def default_category(self) -> str:
        """Category assigned when no guess matches. Default: 'Operations'."""
        return self.rules.get("default_category", "Operations")
