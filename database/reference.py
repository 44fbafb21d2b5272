"""
Reference data loaders — customer directory and failure-scenario catalog.

Both files are exported by the back office as JSON. Customer exports use
either English keys or the Hebrew column headers of the source spreadsheet;
scenario exports use either the flat {label, steps, notes} shape or the
older {equipment_type, problem, diagnosis, solution, warnings} shape.
"""
from __future__ import annotations

import json
import re
import structlog
from pathlib import Path
from typing import Any

from models.schemas import Customer, ResolutionCatalogEntry

logger = structlog.get_logger()

MAX_PHONES = 5

_CUSTOMER_FIELDS = {
    "id": ("id", "customer_id", "מספר לקוח"),
    "name": ("name", "customer_name", "שם לקוח"),
    "site": ("site", "site_name", "שם החניון"),
    "address": ("address", "כתובת הלקוח"),
    "email": ("email", "mail", "מייל"),
}
_PHONE_FIELDS = ("phones", "phone", "טלפון", "phone1", "phone2", "phone3", "phone4", "phone5")
_PHONE_SPLIT = re.compile(r"[,;/|\n]+")


def _first(raw: dict[str, Any], names: tuple[str, ...]) -> str:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return ""


def customer_from_raw(raw: dict[str, Any]) -> Customer:
    phones: list[str] = []
    for name in _PHONE_FIELDS:
        value = raw.get(name)
        if not value:
            continue
        values = value if isinstance(value, list) else _PHONE_SPLIT.split(str(value))
        phones.extend(str(v).strip() for v in values if str(v).strip())

    return Customer(
        id=_first(raw, _CUSTOMER_FIELDS["id"]),
        name=_first(raw, _CUSTOMER_FIELDS["name"]),
        site=_first(raw, _CUSTOMER_FIELDS["site"]),
        address=_first(raw, _CUSTOMER_FIELDS["address"]),
        email=_first(raw, _CUSTOMER_FIELDS["email"]),
        phones=phones[:MAX_PHONES],
    )


def entry_from_raw(raw: dict[str, Any]) -> ResolutionCatalogEntry:
    if "label" in raw:
        return ResolutionCatalogEntry(
            label=raw["label"],
            steps=[str(s) for s in raw.get("steps", [])],
            notes=raw.get("notes", "") or "",
        )

    label = " - ".join(p for p in (raw.get("equipment_type", ""), raw.get("problem", "")) if p)
    notes = [raw.get("diagnosis", "")] + [f"• {w}" for w in raw.get("warnings", []) or []]
    return ResolutionCatalogEntry(
        label=label,
        steps=[str(s) for s in raw.get("solution", [])],
        notes="\n".join(n for n in notes if n),
    )


def _read_json(path: str) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def load_customers(path: str) -> list[Customer]:
    """Load the customer directory, preserving file order (ties resolve by it)."""
    if not Path(path).exists():
        logger.warning("customers_file_missing", path=path)
        return []
    try:
        raw = _read_json(path)
    except (OSError, ValueError) as e:
        logger.error("customers_load_failed", path=path, error=str(e))
        return []

    rows = raw if isinstance(raw, list) else raw.get("customers", [])
    customers = []
    for row in rows:
        try:
            customers.append(customer_from_raw(row))
        except Exception as e:
            logger.warning("customer_row_skipped", error=str(e), row=row)
    logger.info("customers_loaded", count=len(customers), path=path)
    return customers


def load_catalog(path: str) -> list[ResolutionCatalogEntry]:
    if not Path(path).exists():
        logger.warning("catalog_file_missing", path=path)
        return []
    try:
        raw = _read_json(path)
    except (OSError, ValueError) as e:
        logger.error("catalog_load_failed", path=path, error=str(e))
        return []

    rows = raw if isinstance(raw, list) else raw.get("scenarios", [])
    entries = []
    for row in rows:
        try:
            entries.append(entry_from_raw(row))
        except Exception as e:
            logger.warning("catalog_row_skipped", error=str(e))
    logger.info("catalog_loaded", count=len(entries), path=path)
    return entries
