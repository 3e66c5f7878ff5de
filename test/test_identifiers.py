"""
Identifier issuance: format, per-outlet scoping and uniqueness under
concurrent requests.
"""

import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from sqlmodel import Session, SQLModel, create_engine

from rms_pos.db import atomic
from rms_pos.identifiers import (
    business_date,
    issue_bill_number,
    issue_invoice_number,
    issue_kot_number,
    issue_order_number,
    outlet_code,
)

from conftest import OUTLET, TENANT

NUMBER_PATTERN = re.compile(r"^(ORD|BILL|INV)-[A-Z0-9]{1,4}-\d{8}-\d{4}$")


def test_outlet_code_uses_last_four_alphanumerics():
    assert outlet_code("outlet-00a1") == "00A1"
    assert outlet_code("7") == "7"
    assert outlet_code("---") == "0000"


def test_business_date_format():
    assert business_date(datetime(2024, 1, 5, 23, 59, tzinfo=timezone.utc)) == "20240105"


def test_numbers_follow_format_and_count_up(session):
    with atomic(session):
        first = issue_order_number(session, TENANT, OUTLET)
        second = issue_order_number(session, TENANT, OUTLET)
        bill = issue_bill_number(session, TENANT, OUTLET)
        invoice = issue_invoice_number(session, TENANT, OUTLET)

    for number in (first, second, bill, invoice):
        assert NUMBER_PATTERN.match(number), number
    assert first.endswith("-0001")
    assert second.endswith("-0002")
    # Each kind keeps its own counter
    assert bill.startswith("BILL-00A1-") and bill.endswith("-0001")
    assert invoice.startswith("INV-00A1-") and invoice.endswith("-0001")


def test_counters_are_scoped_per_outlet_and_tenant(session):
    with atomic(session):
        a = issue_order_number(session, TENANT, "outlet-a")
        b = issue_order_number(session, TENANT, "outlet-b")
        c = issue_order_number(session, "tenant-2", "outlet-a")
    assert a.endswith("-0001") and b.endswith("-0001") and c.endswith("-0001")


def test_kot_number_embeds_order_number(session):
    with atomic(session):
        order_number = issue_order_number(session, TENANT, OUTLET)
        kot_number = issue_kot_number(session, TENANT, OUTLET, order_number)
    assert kot_number.startswith(f"KOT-{order_number}-")


def test_many_numbers_in_the_same_instant_are_distinct(session):
    with atomic(session):
        numbers = [issue_order_number(session, TENANT, OUTLET) for _ in range(50)]
    assert len(set(numbers)) == 50


def test_concurrent_issuance_never_repeats(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'identifiers.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    SQLModel.metadata.create_all(engine)

    def issue(_):
        with Session(engine) as session:
            with atomic(session, "issue order number"):
                return issue_order_number(session, TENANT, OUTLET)

    with ThreadPoolExecutor(max_workers=8) as pool:
        numbers = list(pool.map(issue, range(40)))

    engine.dispose()
    assert len(numbers) == 40
    assert len(set(numbers)) == 40
    assert sorted(int(n.rsplit("-", 1)[1]) for n in numbers) == list(range(1, 41))
