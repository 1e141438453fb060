"""Excel lead importer."""

from pathlib import Path

import structlog
from openpyxl import Workbook, load_workbook

from sequencer.core.db import DEFAULT_DB_PATH, DEFAULT_TENANT, insert_lead

log = structlog.get_logger()

OPTIONAL_COLUMNS = ("company", "owner_name", "location", "sender_identity")


def _cell(row: tuple, col_map: dict, name: str):
    idx = col_map.get(name)
    if idx is None or idx >= len(row):
        return None
    value = row[idx]
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def import_leads(
    excel_path: Path,
    db_path: Path = DEFAULT_DB_PATH,
    tenant_id: str = DEFAULT_TENANT,
) -> dict:
    """Import leads from Excel file into a tenant.

    Expected columns: email and name (or first_name/last_name), plus
    optional company, owner_name, location, sender_identity.

    Returns dict with imported and skipped counts.
    """
    wb = load_workbook(excel_path)
    ws = wb.active

    # Get header row
    headers = [str(cell.value).lower().strip() if cell.value else "" for cell in ws[1]]

    if "email" not in headers or not ({"name", "first_name"} & set(headers)):
        raise ValueError(
            f"Excel must have columns: email and name (or first_name). Found: {headers}"
        )

    # Map column indices
    col_map = {name: idx for idx, name in enumerate(headers) if name}

    imported = 0
    skipped = 0

    for row in ws.iter_rows(min_row=2, values_only=True):
        email = _cell(row, col_map, "email")
        if not email:
            continue

        email = email.lower()
        name = _cell(row, col_map, "name")
        if not name:
            parts = [_cell(row, col_map, "first_name"), _cell(row, col_map, "last_name")]
            name = " ".join(part for part in parts if part)

        if not name:
            log.warning("skipping_row_no_name", email=email)
            skipped += 1
            continue

        lead_id = insert_lead(
            db_path,
            tenant_id,
            email,
            name,
            **{column: _cell(row, col_map, column) for column in OPTIONAL_COLUMNS},
        )

        if lead_id:
            log.info("lead_imported", email=email, lead_id=lead_id, tenant_id=tenant_id)
            imported += 1
        else:
            log.info("lead_skipped_duplicate", email=email, tenant_id=tenant_id)
            skipped += 1

    return {"imported": imported, "skipped": skipped}


def create_example_excel(output_path: Path) -> None:
    """Create an example Excel file showing expected format."""
    wb = Workbook()
    ws = wb.active
    ws.title = "Leads"

    # Headers
    ws.append(["email", "name", "company", "owner_name", "location"])

    # Example rows
    ws.append([
        "hello@harborbakery.com",
        "Harbor Bakery",
        "Harbor Bakery",
        "Dana Whitfield",
        "Portland, ME",
    ])
    ws.append([
        "info@northsidedental.com",
        "Northside Dental",
        "Northside Dental Group",
        "",
        "Madison, WI",
    ])

    wb.save(output_path)
