#!/usr/bin/env python3
"""
Script to import the pharmacy price list into the inventory collection.
The discharge aggregator prices dispensed medicines from these records.

Supports .csv, .xls and .xlsx files. Rows are upserted by medicine name.
"""

import sys
from pathlib import Path

import pandas as pd

from hospital_billing.models import utcnow
from hospital_billing.store import DocumentStore, where

# File column -> inventory field; first match wins
COLUMN_MAP = {
    "name": ("Product Name", "Name", "Medicine", "name"),
    "category": ("Type", "Category", "category"),
    "quantity": ("Stock", "Quantity", "Qty", "quantity"),
    "cost": ("Price", "Cost", "MRP", "Unit Price", "cost", "price"),
}


def parse_number(value, default=0.0):
    """Parse a numeric cell as float, handle empty strings and NaN"""
    if value is None or (isinstance(value, float) and pd.isna(value)) or str(value).strip() == "":
        return default
    try:
        return float(str(value).replace(",", "").replace("₹", "").strip())
    except ValueError:
        return default


def read_price_list(file_path) -> pd.DataFrame:
    path = Path(file_path)
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path)
    return pd.read_excel(path, sheet_name=0)


def _pick(row, field):
    for column in COLUMN_MAP[field]:
        if column in row.index and pd.notna(row[column]):
            return row[column]
    return None


def import_inventory(store: DocumentStore, file_path) -> dict:
    """
    Upsert every priced row of the file into `inventory`.

    Returns counts: imported (new), updated (existing name), skipped (no name), errors.
    """
    df = read_price_list(file_path)
    print(f"Total rows in file: {len(df)}\n")

    imported = updated = skipped = errors = 0
    for idx, row in df.iterrows():
        try:
            name = _pick(row, "name")
            if name is None or str(name).strip() == "":
                skipped += 1
                continue
            name = str(name).strip()
            category = _pick(row, "category")

            fields = {
                "name": name,
                "category": str(category).strip() if category is not None else "Uncategorized",
                "quantity": parse_number(_pick(row, "quantity")),
                "cost": parse_number(_pick(row, "cost")),
                "updatedAt": utcnow(),
            }

            existing = store.query("inventory", where("name", "==", name))
            if existing:
                store.update("inventory", existing[0]["id"], fields)
                updated += 1
                print(f"⟳ Row {idx + 2}: Updated '{name}' (₹{fields['cost']})")
            else:
                store.add("inventory", {**fields, "createdAt": utcnow()})
                imported += 1
                print(f"✓ Row {idx + 2}: Imported '{name}' (₹{fields['cost']})")
        except Exception as e:
            errors += 1
            print(f"✗ Row {idx + 2}: Error - {str(e)}")

    print("\n" + "=" * 60)
    print("IMPORT SUMMARY")
    print("=" * 60)
    print(f"✓ Imported (New):    {imported} items")
    print(f"⟳ Updated (Existing): {updated} items")
    print(f"⊘ Skipped (Empty):   {skipped} rows")
    print(f"✗ Errors:            {errors} rows")
    print("=" * 60)

    return {"imported": imported, "updated": updated, "skipped": skipped, "errors": errors}


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: python import_inventory.py <price-list.csv|.xlsx>")
        sys.exit(1)

    from hospital_billing.database import get_store

    print("\n" + "=" * 60)
    print("INVENTORY PRICE LIST IMPORTER")
    print("=" * 60 + "\n")

    try:
        import_inventory(get_store(), sys.argv[1])
    except FileNotFoundError:
        print(f"✗ Error: File not found: {sys.argv[1]}")
        sys.exit(1)
    print("\n✓ Import completed successfully!")


if __name__ == "__main__":
    main()
