#!/usr/bin/env python3
"""
Generate Sample Test Data

Creates realistic directory records and follow-up schedules for the
local API server and for manual AWS Console testing.

- seed_local_data(): writes suppliers, buildings, assistances, one
  follow-up per assistance and an invite code per supplier into the
  configured table (moto locally)
- main(): writes the same records as JSON files for manual entry
"""

import json
import random
import sys
import time
from datetime import date, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from faker import Faker

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from maintenance.shared.models.directory import Assistance, Building, Supplier
from maintenance.shared.models.follow_up import FollowUpPriority, FollowUpType


class DirectoryDataGenerator:
    """Generate directory records and follow-up requests."""

    SPECIALIZATIONS = [
        "plumbing",
        "electrical",
        "elevators",
        "painting",
        "roofing",
        "hvac",
        "locksmith",
        "gardening",
    ]

    PROBLEMS = [
        "Water leak in the garage ceiling",
        "Entrance door intercom not working",
        "Elevator stops between floors",
        "Stairwell lights flickering",
        "Roof tiles displaced after storm",
        "Heating failure in common areas",
    ]

    def __init__(self, seed: int | None = None):
        """Initialize generator with optional seed for reproducibility."""
        self._rng = random.Random(seed)
        if seed:
            Faker.seed(seed)
        self.fake = Faker()

    def supplier(self, supplier_id: str | None = None) -> Supplier:
        company = self.fake.company()
        return Supplier(
            supplier_id=supplier_id or f"sup-{uuid4().hex[:8]}",
            name=company,
            email=self.fake.company_email(),
            phone=self.fake.phone_number(),
            address=self.fake.address().replace("\n", ", "),
            specialization=self._rng.choice(self.SPECIALIZATIONS),
        )

    def building(self, building_id: str | None = None) -> Building:
        return Building(
            building_id=building_id or f"bld-{uuid4().hex[:8]}",
            name=f"Condominium {self.fake.last_name()}",
            address=self.fake.address().replace("\n", ", "),
        )

    def assistance(self, building: Building, today: date) -> Assistance:
        start = today + timedelta(days=self._rng.randint(-10, 10))
        return Assistance(
            assistance_id=f"ast-{uuid4().hex[:8]}",
            title=self._rng.choice(self.PROBLEMS),
            description=self.fake.paragraph(nb_sentences=2),
            priority=self._rng.choice(list(FollowUpPriority)),
            building_id=building.building_id,
            scheduled_start_date=start,
            expected_completion_date=start + timedelta(days=self._rng.randint(1, 14)),
            quotation_deadline=today + timedelta(days=self._rng.randint(1, 7)),
        )

    def follow_up_request(self, assistance: Assistance, now: int) -> dict[str, Any]:
        """Arguments for create_follow_up, some already due."""
        follow_up_type = self._rng.choice(list(FollowUpType))
        metadata: dict[str, Any] = {}
        if follow_up_type == FollowUpType.QUOTATION_REMINDER:
            metadata["quotation_deadline"] = assistance.quotation_deadline
        elif follow_up_type == FollowUpType.DATE_CONFIRMATION:
            metadata["proposed_start_date"] = assistance.scheduled_start_date
        elif follow_up_type == FollowUpType.WORK_REMINDER:
            metadata["work_date"] = assistance.scheduled_start_date
        else:
            metadata["expected_completion"] = assistance.expected_completion_date
        return {
            "follow_up_type": follow_up_type,
            "assistance_id": assistance.assistance_id,
            "scheduled_for": now + self._rng.choice([-3600, -60, 600, 86400]),
            "priority": assistance.priority,
            "metadata": metadata,
        }


def seed_local_data(
    *,
    suppliers: int = 3,
    assistances_per_supplier: int = 2,
    seed: int = 42,
    now: int | None = None,
) -> dict[str, Any]:
    """
    Populate the configured table with a small consistent data set.

    Returns:
        Summary with supplier ids, follow-up ids and one invite code per supplier
    """
    from maintenance.credentials.codes import issue
    from maintenance.followups.store import create_follow_up
    from maintenance.shared.tools.dynamodb import get_table

    current = now if now is not None else int(time.time())
    today = date.fromtimestamp(current)
    generator = DirectoryDataGenerator(seed=seed)
    table = get_table()

    summary: dict[str, Any] = {"suppliers": [], "follow_ups": [], "codes": {}}
    for _ in range(suppliers):
        supplier = generator.supplier()
        building = generator.building()
        table.put_item(Item=supplier.to_dynamodb())
        table.put_item(Item=building.to_dynamodb())
        summary["suppliers"].append(supplier.supplier_id)

        for _ in range(assistances_per_supplier):
            assistance = generator.assistance(building, today)
            table.put_item(Item=assistance.to_dynamodb())
            request = generator.follow_up_request(assistance, current)
            schedule = create_follow_up(supplier_id=supplier.supplier_id, now=current, **request)
            summary["follow_ups"].append(schedule.follow_up_id)

        code = issue(supplier.supplier_id, now=current)
        summary["codes"][supplier.supplier_id] = code.code

    return summary


def generate_dynamodb_sample_data(seed: int = 123) -> list[dict[str, Any]]:
    """Directory items as they are stored in DynamoDB."""
    generator = DirectoryDataGenerator(seed=seed)
    today = date.today()
    items: list[dict[str, Any]] = []
    for _ in range(3):
        supplier = generator.supplier()
        building = generator.building()
        assistance = generator.assistance(building, today)
        items.extend([supplier.to_dynamodb(), building.to_dynamodb(), assistance.to_dynamodb()])
    return items


def main():
    """Generate all sample data files."""
    output_dir = project_root / "test_data"
    output_dir.mkdir(parents=True, exist_ok=True)

    print("Generating sample test data...\n")

    dynamo_items = generate_dynamodb_sample_data()
    dynamo_file = output_dir / "dynamodb_sample_items.json"
    with open(dynamo_file, "w") as f:
        json.dump({"items": dynamo_items}, f, indent=2, default=str)
    print(f"Saved {len(dynamo_items)} directory items to {dynamo_file}")

    generator = DirectoryDataGenerator(seed=999)
    now = int(time.time())
    building = generator.building()
    requests = [
        generator.follow_up_request(generator.assistance(building, date.today()), now)
        for _ in range(5)
    ]
    requests_file = output_dir / "follow_up_requests.json"
    with open(requests_file, "w") as f:
        json.dump({"requests": requests}, f, indent=2, default=str)
    print(f"Saved {len(requests)} follow-up requests to {requests_file}")


if __name__ == "__main__":
    main()
