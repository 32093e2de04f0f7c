"""
Directory Loaders

Read-only lookups of suppliers, buildings and assistances.
"""

import structlog

from maintenance.shared.models.directory import Assistance, Building, Supplier
from maintenance.shared.tools.dynamodb import get_item

log = structlog.get_logger()


def load_supplier(supplier_id: str) -> Supplier | None:
    item = get_item({"PK": f"SUPPLIER#{supplier_id}", "SK": "PROFILE"}, consistent_read=False)
    if not item:
        log.debug("supplier_not_found", supplier_id=supplier_id)
        return None
    return Supplier.from_dynamodb(item)


def load_building(building_id: str) -> Building | None:
    item = get_item({"PK": f"BUILDING#{building_id}", "SK": "PROFILE"}, consistent_read=False)
    return Building.from_dynamodb(item) if item else None


def load_assistance(assistance_id: str) -> Assistance | None:
    item = get_item({"PK": f"ASSISTANCE#{assistance_id}", "SK": "METADATA"}, consistent_read=False)
    if not item:
        log.debug("assistance_not_found", assistance_id=assistance_id)
        return None
    return Assistance.from_dynamodb(item)
