import threading

import pytest
from unittest.mock import patch
from sqlalchemy import func, select

import httpx

from opsdesk.auth import register_user
from opsdesk.models import Failure, OperationRequest, Success
from opsdesk.notifications import Notifier
from opsdesk.registry import build_registry
from opsdesk.store import AuditEntry, Invoice, Lead, Order, Project, PropertyManagerInvoice, Quotation
from opsdesk.tools import CATALOG, _create_numbered

LEAD = {
    "name": "Thapelo Chalatsi",
    "email": "thapelo@example.com",
    "phone": "0783800308",
    "service_type": "Roof Repair",
    "address": "274 Fox Street, Johannesburg",
}


def call(registry, operation, /, **parameters):
    return registry.invoke(OperationRequest(name=operation, parameters=parameters))


@pytest.fixture
def registry(make_registry, admin):
    return make_registry(admin)

# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

def test_create_lead_success(registry, session_factory, admin):
    outcome = call(registry, "create_lead", **LEAD)
    assert isinstance(outcome, Success)
    assert outcome.payload["status"] == "NEW"
    assert "Thapelo Chalatsi" in outcome.message

    with session_factory() as session:
        lead = session.get(Lead, outcome.payload["lead_id"])
        assert lead.created_by_id == admin.id
        audit = session.scalar(select(AuditEntry).where(AuditEntry.operation == "create_lead"))
        assert audit.actor_id == admin.id

def test_create_lead_missing_phone(registry, session_factory):
    params = {k: v for k, v in LEAD.items() if k != "phone"}
    outcome = call(registry, "create_lead", **params)
    assert outcome == Failure(error="missing phone", message="Invalid parameters for 'create_lead': missing phone")

    with session_factory() as session:
        assert session.scalar(select(func.count(Lead.id))) == 0

def test_create_lead_rejects_bad_email(registry):
    outcome = call(registry, "create_lead", **{**LEAD, "email": "not-an-email"})
    assert isinstance(outcome, Failure)
    assert outcome.error.startswith("email:")

def test_create_lead_rejects_blank_name(registry):
    outcome = call(registry, "create_lead", **{**LEAD, "name": "   "})
    assert isinstance(outcome, Failure)
    assert outcome.error.startswith("name:")

def test_list_leads_filters_by_status(registry):
    first = call(registry, "create_lead", **LEAD).payload["lead_id"]
    call(registry, "create_lead", **{**LEAD, "name": "Second Lead"})
    call(registry, "update_lead_status", lead_id=first, status="WON")

    outcome = call(registry, "list_leads", status="WON")
    assert [lead["id"] for lead in outcome.payload["leads"]] == [first]
    assert call(registry, "list_leads", status="LOST").message == "No leads found with status LOST."

def test_update_lead_status_rejects_unknown_status(registry):
    lead_id = call(registry, "create_lead", **LEAD).payload["lead_id"]
    outcome = call(registry, "update_lead_status", lead_id=lead_id, status="MAYBE")
    assert isinstance(outcome, Failure)
    assert outcome.error.startswith("status:")

def test_get_lead_details_not_found(registry):
    assert call(registry, "get_lead_details", lead_id=404).error == "not_found"

def test_sales_summary_counts_by_status(registry):
    call(registry, "create_lead", **{**LEAD, "estimated_value": 1000})
    won = call(registry, "create_lead", **{**LEAD, "estimated_value": 500}).payload["lead_id"]
    call(registry, "update_lead_status", lead_id=won, status="WON")

    payload = call(registry, "get_sales_summary").payload
    assert payload["total_leads"] == 2
    assert payload["won_value"] == 500
    assert payload["open_pipeline_value"] == 1000

# ---------------------------------------------------------------------------
# Quotations and invoices
# ---------------------------------------------------------------------------

def test_create_quotation_for_lead(registry, session_factory):
    lead_id = call(registry, "create_lead", **LEAD).payload["lead_id"]
    outcome = call(registry, "create_quotation", lead_id=lead_id, description="Replace roof sheets", estimated_amount=1000)
    assert outcome.payload["quote_number"] == "QUO-00001"
    assert outcome.payload["total"] == pytest.approx(1150)

    with session_factory() as session:
        quotation = session.get(Quotation, outcome.payload["quotation_id"])
        assert quotation.customer_email == LEAD["email"]

def test_create_quotation_for_missing_lead(registry):
    outcome = call(registry, "create_quotation", lead_id=99, description="x", estimated_amount=10)
    assert outcome.error == "not_found"

def test_create_quotation_rejects_non_positive_amount(registry):
    outcome = call(registry, "create_quotation", lead_id=1, description="x", estimated_amount=0)
    assert outcome.error.startswith("estimated_amount:")

def test_invoice_numbers_are_sequential(registry):
    first = call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=100, description="x")
    second = call(registry, "create_invoice", customer_name="B", customer_email="b@example.com", amount=200, description="y")
    assert first.payload["invoice_number"] == "INV-00001"
    assert second.payload["invoice_number"] == "INV-00002"

def test_invoice_skips_a_taken_number(registry, session_factory, admin):
    with session_factory() as session:
        session.add(Invoice(invoice_number="INV-00002", customer_name="Old", customer_email="o@example.com", created_by_id=admin.id))
        session.commit()

    outcome = call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=100, description="x")
    assert outcome.payload["invoice_number"] == "INV-00003"

def test_invoice_collision_exhaustion_is_a_failure(session_factory, notifier, config, admin):
    config = config.model_copy(update={"reference_attempts": 1})
    registry = build_registry(admin, session_factory, notifier, config)
    with session_factory() as session:
        session.add(Invoice(invoice_number="INV-00002", customer_name="Old", customer_email="o@example.com", created_by_id=admin.id))
        session.commit()

    outcome = call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=100, description="x")
    assert outcome.error == "reference_collision"

def test_contractor_invoices_start_as_draft(make_registry, session_factory):
    contractor, _ = register_user(session_factory, "con@example.com", "CONTRACTOR", "Con", "Tractor")
    outcome = call(make_registry(contractor), "create_invoice", customer_name="A", customer_email="a@example.com", amount=10, description="x")
    assert "Status: DRAFT" in outcome.message

def test_invoice_for_unknown_project(registry):
    outcome = call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=10, description="x", project_id=7)
    assert outcome.error == "not_found"

def test_paid_invoice_cannot_be_reopened(registry):
    invoice_id = call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=10, description="x").payload["invoice_id"]
    assert isinstance(call(registry, "update_invoice_status", invoice_id=invoice_id, status="PAID"), Success)
    outcome = call(registry, "update_invoice_status", invoice_id=invoice_id, status="SENT")
    assert outcome.error == "invalid_transition"

def test_unauthorized_role_cannot_invoice(make_registry, sales_agent, session_factory):
    outcome = call(make_registry(sales_agent), "create_invoice", customer_name="A", customer_email="a@example.com", amount=10, description="x")
    assert outcome.error == "unauthorized"
    with session_factory() as session:
        assert session.scalar(select(func.count(Invoice.id))) == 0

# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def _order(registry, **overrides):
    params = {
        "customer_name": "Lerato",
        "customer_email": "lerato@example.com",
        "description": "Fix geyser",
        "service_type": "Plumbing",
        "estimated_cost": 1000,
        **overrides,
    }
    return call(registry, "create_order", **params)

def test_create_order_number(registry):
    outcome = _order(registry)
    assert outcome.payload["order_number"] == "ORD-00001"
    assert outcome.payload["status"] == "PENDING"

def test_completing_order_issues_invoice_and_emails(registry, session_factory, notifier):
    order_id = _order(registry).payload["order_id"]
    outcome = call(registry, "update_order_status", order_id=order_id, status="COMPLETED", notes="Done on site")

    assert isinstance(outcome, Success)
    assert outcome.payload["invoice_number"] == "INV-00001"
    with session_factory() as session:
        invoice = session.get(Invoice, outcome.payload["invoice_id"])
        assert invoice.order_id == order_id
        assert invoice.total == pytest.approx(1150)
        order = session.get(Order, order_id)
        assert order.status == "COMPLETED"
        assert "Done on site" in order.notes

    notifier.send_email.assert_called_once()
    assert notifier.send_email.call_args.args[0] == "lerato@example.com"

def test_completed_order_cannot_move_back(registry):
    order_id = _order(registry).payload["order_id"]
    call(registry, "update_order_status", order_id=order_id, status="COMPLETED")
    outcome = call(registry, "update_order_status", order_id=order_id, status="IN_PROGRESS")
    assert outcome.error == "invalid_transition"

def test_completing_order_without_cost_issues_zero_invoice(registry, session_factory, notifier):
    order_id = _order(registry, estimated_cost=None).payload["order_id"]
    outcome = call(registry, "update_order_status", order_id=order_id, status="COMPLETED")
    assert outcome.payload["invoice_number"] == "INV-00001"
    with session_factory() as session:
        assert session.get(Invoice, outcome.payload["invoice_id"]).total == 0
    notifier.send_email.assert_called_once()

def test_completing_twice_is_a_no_op(registry, session_factory, notifier):
    order_id = _order(registry).payload["order_id"]
    call(registry, "update_order_status", order_id=order_id, status="COMPLETED")
    again = call(registry, "update_order_status", order_id=order_id, status="COMPLETED")

    assert isinstance(again, Success)
    assert again.payload == {"order_id": order_id, "previous_status": "COMPLETED", "status": "COMPLETED"}
    assert "already COMPLETED" in again.message
    notifier.send_email.assert_called_once()
    with session_factory() as session:
        assert session.scalar(select(func.count(Invoice.id)).where(Invoice.order_id == order_id)) == 1
        audits = session.scalar(
            select(func.count(AuditEntry.id)).where(AuditEntry.record_type == "order", AuditEntry.record_id == order_id)
        )
        assert audits == 2

def test_concurrent_completions_issue_one_invoice(registry, session_factory, notifier):
    order_id = _order(registry).payload["order_id"]
    barrier = threading.Barrier(2)
    outcomes = [None, None]

    # Both requests pass the status check before either writes.
    def gated(*args, **kwargs):
        barrier.wait(timeout=5)
        return _create_numbered(*args, **kwargs)

    def complete(index):
        outcomes[index] = call(registry, "update_order_status", order_id=order_id, status="COMPLETED")

    with patch("opsdesk.tools._create_numbered", side_effect=gated):
        threads = [threading.Thread(target=complete, args=(i,)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    assert all(isinstance(outcome, Success) for outcome in outcomes)
    assert sum("invoice_number" in outcome.payload for outcome in outcomes) == 1
    notifier.send_email.assert_called_once()
    with session_factory() as session:
        assert session.scalar(select(func.count(Invoice.id)).where(Invoice.order_id == order_id)) == 1

def test_status_change_records_note(registry, session_factory):
    order_id = _order(registry).payload["order_id"]
    outcome = call(registry, "update_order_status", order_id=order_id, status="IN_PROGRESS", notes="Crew on site")
    assert outcome.payload == {"order_id": order_id, "previous_status": "PENDING", "status": "IN_PROGRESS"}
    with session_factory() as session:
        order = session.get(Order, order_id)
        assert order.status == "IN_PROGRESS"
        assert "Crew on site" in order.notes

def test_property_manager_order_yields_pm_invoice(registry, session_factory, notifier):
    manager, _ = register_user(session_factory, "pm@example.com", "PROPERTY_MANAGER", "Pat", "Manager")
    call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=10, description="x")
    order_id = _order(registry, property_manager_id=manager.id).payload["order_id"]

    outcome = call(registry, "update_order_status", order_id=order_id, status="COMPLETED")
    assert outcome.payload["invoice_number"] == "INV-00002"
    with session_factory() as session:
        pm_invoice = session.get(PropertyManagerInvoice, outcome.payload["invoice_id"])
        assert pm_invoice.status == "SENT_TO_PM"
        assert pm_invoice.property_manager_id == manager.id
    assert notifier.notify.call_args.args[0] == manager.id

def test_order_for_non_manager_is_rejected(registry, admin):
    outcome = _order(registry, property_manager_id=admin.id)
    assert outcome.error == "not_found"

def test_email_failure_does_not_fail_completion(session_factory, config, admin):
    notifier = Notifier(email_webhook_url="https://mail.invalid/hook")
    registry = build_registry(admin, session_factory, notifier, config)
    order_id = _order(registry).payload["order_id"]

    with patch("opsdesk.notifications.httpx.post", side_effect=httpx.ConnectError("refused")) as post:
        outcome = call(registry, "update_order_status", order_id=order_id, status="COMPLETED")
        notifier.shutdown(wait=True)

    assert isinstance(outcome, Success)
    post.assert_called_once()

# ---------------------------------------------------------------------------
# Projects and finance
# ---------------------------------------------------------------------------

def test_create_project_rejects_reversed_dates(registry):
    outcome = call(registry, "create_project", name="Block A", description="Repaint", budget=5000, start_date="2026-05-01", end_date="2026-04-01")
    assert isinstance(outcome, Failure)
    assert "end_date must not be before start_date" in outcome.error

def test_completing_project_sets_full_progress(registry, session_factory):
    project = call(registry, "create_project", name="Block A", description="Repaint", budget=5000)
    assert project.payload["project_number"] == "PRJ-00001"

    outcome = call(registry, "update_project_status", project_id=project.payload["project_id"], status="COMPLETED", progress_percentage=40)
    assert outcome.payload["progress_percentage"] == 100
    with session_factory() as session:
        assert session.get(Project, project.payload["project_id"]).progress_percentage == 100

def test_revenue_counts_paid_invoices(registry):
    invoice_id = call(registry, "create_invoice", customer_name="A", customer_email="a@example.com", amount=100, description="x").payload["invoice_id"]
    call(registry, "create_invoice", customer_name="B", customer_email="b@example.com", amount=300, description="y")
    call(registry, "update_invoice_status", invoice_id=invoice_id, status="PAID")

    assert call(registry, "query_financial_metrics", metric_type="REVENUE").payload["value"] == pytest.approx(115)
    assert call(registry, "query_financial_metrics", metric_type="OUTSTANDING").payload["value"] == pytest.approx(345)

def test_employee_count(registry, sales_agent):
    assert call(registry, "query_financial_metrics", metric_type="EMPLOYEE_COUNT").payload["value"] == 2

# ---------------------------------------------------------------------------
# Outcome shape closure
# ---------------------------------------------------------------------------

MALFORMED = [
    {},
    {"lead_id": "abc", "status": "NOPE", "amount": -1, "metric_type": "PROFIT"},
    {"lead_id": 9999, "order_id": 9999, "invoice_id": 9999, "project_id": 9999, "status": "COMPLETED"},
    {"name": "", "email": "x", "customer_email": "@", "budget": "lots", "start_date": "yesterday"},
]

@pytest.mark.parametrize("parameters", MALFORMED)
@pytest.mark.parametrize("name", [spec.name for spec in CATALOG])
def test_every_operation_returns_one_of_two_shapes(registry, name, parameters):
    outcome = registry.invoke(OperationRequest(name=name, parameters=parameters))
    assert isinstance(outcome, (Success, Failure))
    assert outcome.message
