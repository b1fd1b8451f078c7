# tools.py
# Operation catalog: parameter contracts and executors.
# The harness never calls these functions directly: it goes through the
# registry that registry.build_registry binds to the requesting principal.
#
# Executor rules:
#   * params arrive already validated; remaining checks are lookups
#   * one transaction per invocation, audit entry included
#   * business-rule problems return Failure, never raise

from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, StringConstraints, model_validator
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from opsdesk import auth
from opsdesk.allocator import ReferenceAllocator
from opsdesk.models import Failure, Outcome, Principal, Success
from opsdesk.registry import OperationContext, OperationSpec
from opsdesk.store import (
    AuditEntry,
    Invoice,
    Lead,
    Order,
    Project,
    PropertyManagerInvoice,
    Quotation,
    User,
    count_rows,
    is_unique_violation,
)

NonEmpty = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Id = Annotated[int, Field(gt=0)]

LeadStatus = Literal["NEW", "CONTACTED", "QUALIFIED", "PROPOSAL_SENT", "NEGOTIATION", "WON", "LOST"]
InvoiceStatus = Literal["DRAFT", "PENDING_REVIEW", "PENDING_APPROVAL", "SENT", "PAID", "OVERDUE", "CANCELLED"]
QuotationStatus = Literal[
    "DRAFT",
    "PENDING_ARTISAN_REVIEW",
    "IN_PROGRESS",
    "PENDING_JUNIOR_MANAGER_REVIEW",
    "PENDING_SENIOR_MANAGER_REVIEW",
    "APPROVED",
    "SENT_TO_CUSTOMER",
    "REJECTED",
]
OrderStatus = Literal["PENDING", "ASSIGNED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
OrderPriority = Literal["LOW", "MEDIUM", "HIGH", "URGENT"]
ProjectStatus = Literal["PLANNING", "IN_PROGRESS", "ON_HOLD", "COMPLETED", "CANCELLED"]
MetricType = Literal["REVENUE", "OUTSTANDING", "PIPELINE_VALUE", "CUSTOMER_COUNT", "EMPLOYEE_COUNT"]

CONTRACTOR_ROLES = frozenset({"CONTRACTOR", "CONTRACTOR_SENIOR_MANAGER", "CONTRACTOR_JUNIOR_MANAGER"})
STAFF_ROLES = frozenset(
    {"SENIOR_ADMIN", "JUNIOR_ADMIN", "MANAGER", "SALES_AGENT", "ACCOUNTANT", "STAFF", "ARTISAN"}
)
LIST_LIMIT = 20
VAT_RATE = 0.15


# ---------------------------------------------------------------------------
# Parameter contracts
# ---------------------------------------------------------------------------


class NoParams(BaseModel):
    pass


class CreateLeadParams(BaseModel):
    name: NonEmpty = Field(..., description="Full name of the customer/lead.")
    email: EmailStr = Field(..., description="Customer email address. Must be a valid email.")
    phone: NonEmpty = Field(..., description="Customer phone number.")
    service_type: NonEmpty = Field(..., description="Service needed, e.g. Roof Repair, Plumbing, Electrical, HVAC.")
    address: Optional[str] = Field(default=None, description="Customer address. Strongly recommended.")
    company_name: Optional[str] = Field(default=None, description="Company name.")
    description: Optional[str] = Field(default=None, description="What the customer needs.")
    estimated_value: Optional[float] = Field(default=None, ge=0, description="Estimated deal value.")


class ListLeadsParams(BaseModel):
    status: Optional[LeadStatus] = Field(default=None, description="Only leads in this status.")
    limit: int = Field(default=LIST_LIMIT, ge=1, le=50, description="Maximum number of leads to return.")


class LeadRefParams(BaseModel):
    lead_id: Id = Field(..., description="ID of the lead.")


class UpdateLeadStatusParams(BaseModel):
    lead_id: Id = Field(..., description="ID of the lead.")
    status: LeadStatus = Field(..., description="New pipeline status.")


class CreateQuotationParams(BaseModel):
    lead_id: Id = Field(..., description="Lead the quotation is for. Look it up first with get_lead_details.")
    description: NonEmpty = Field(..., description="Scope of work.")
    estimated_amount: float = Field(..., gt=0, description="Quoted amount, before tax.")
    valid_until: Optional[date] = Field(default=None, description="Quote validity date (YYYY-MM-DD).")
    notes: Optional[str] = Field(default=None, description="Additional notes or terms.")


class ListQuotationsParams(BaseModel):
    status: Optional[QuotationStatus] = Field(default=None, description="Only quotations in this status.")


class CreateInvoiceParams(BaseModel):
    customer_name: NonEmpty = Field(..., description="Customer full name.")
    customer_email: EmailStr = Field(..., description="Customer email address.")
    amount: float = Field(..., gt=0, description="Invoice amount before tax.")
    description: NonEmpty = Field(..., description="Services rendered or items supplied.")
    customer_phone: Optional[str] = Field(default=None, description="Customer phone number.")
    address: Optional[str] = Field(default=None, description="Customer address.")
    due_date: Optional[date] = Field(default=None, description="Due date (YYYY-MM-DD).")
    project_id: Optional[Id] = Field(default=None, description="Associated project ID, if any.")


class ListInvoicesParams(BaseModel):
    status: Optional[InvoiceStatus] = Field(default=None, description="Only invoices in this status.")


class UpdateInvoiceStatusParams(BaseModel):
    invoice_id: Id = Field(..., description="ID of the invoice.")
    status: InvoiceStatus = Field(..., description="New invoice status.")


class CreateOrderParams(BaseModel):
    customer_name: NonEmpty = Field(..., description="Customer name.")
    description: NonEmpty = Field(..., description="Work to be done.")
    service_type: Optional[str] = Field(default=None, description="Service category.")
    customer_email: Optional[EmailStr] = Field(default=None, description="Customer email for completion notices.")
    customer_phone: Optional[str] = Field(default=None, description="Customer phone number.")
    address: Optional[str] = Field(default=None, description="Job site address.")
    priority: OrderPriority = Field(default="MEDIUM", description="Priority level.")
    due_date: Optional[date] = Field(default=None, description="Expected completion date (YYYY-MM-DD).")
    estimated_cost: Optional[float] = Field(default=None, ge=0, description="Estimated cost before tax.")
    property_manager_id: Optional[Id] = Field(
        default=None, description="Property manager user ID when the order comes from a property manager."
    )


class UpdateOrderStatusParams(BaseModel):
    order_id: Id = Field(..., description="ID of the order.")
    status: OrderStatus = Field(..., description="New order status. COMPLETED issues the order's invoice.")
    notes: Optional[str] = Field(default=None, description="Note recorded with the status change.")


class CreateProjectParams(BaseModel):
    name: NonEmpty = Field(..., description="Project name.")
    description: NonEmpty = Field(..., description="Project scope.")
    budget: float = Field(..., ge=0, description="Total budget.")
    customer_name: Optional[str] = Field(default=None, description="Client name.")
    start_date: Optional[date] = Field(default=None, description="Start date (YYYY-MM-DD).")
    end_date: Optional[date] = Field(default=None, description="Planned end date (YYYY-MM-DD).")

    @model_validator(mode="after")
    def _dates_in_order(self) -> "CreateProjectParams":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class ListProjectsParams(BaseModel):
    status: Optional[ProjectStatus] = Field(default=None, description="Only projects in this status.")


class UpdateProjectStatusParams(BaseModel):
    project_id: Id = Field(..., description="ID of the project.")
    status: ProjectStatus = Field(..., description="New project status.")
    progress_percentage: Optional[int] = Field(default=None, ge=0, le=100, description="Progress, 0-100.")


class FinancialMetricsParams(BaseModel):
    metric_type: MetricType = Field(..., description="Metric to compute.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _money(value: float | None) -> str:
    return f"R{(value or 0):,.2f}"


def _not_found(record_type: str, record_id: int) -> Failure:
    return Failure(error="not_found", message=f"{record_type} {record_id} does not exist.")


def _audit(session: Session, principal: Principal, operation: str, record_type: str, record_id: int, summary: str) -> None:
    session.add(
        AuditEntry(
            actor_id=principal.id,
            operation=operation,
            record_type=record_type,
            record_id=record_id,
            summary=summary,
        )
    )


def _allocator(ctx: OperationContext, prefix: str) -> ReferenceAllocator:
    return ReferenceAllocator(
        prefix,
        width=ctx.config.reference_width,
        max_attempts=ctx.config.reference_attempts,
        suffix_after=ctx.config.reference_suffix_after,
    )


def _create_numbered(
    ctx: OperationContext,
    prefix: str,
    counted: tuple,
    column: str,
    write: Callable[[Session, str], Any],
) -> Any:
    """
    Allocate a reference and run `write(session, reference)` in one transaction.

    `write` adds whatever rows it needs and returns the value to hand back.
    Raises the last IntegrityError if every attempt collided.
    """

    def count() -> int:
        with ctx.session_factory() as session:
            return count_rows(session, *counted)

    def commit(reference: str) -> Any:
        with ctx.session_factory() as session:
            result = write(session, reference)
            session.commit()
            return result

    return _allocator(ctx, prefix).allocate(count, commit, lambda exc: is_unique_violation(exc, column))


def _collision_failure(record_type: str) -> Failure:
    return Failure(
        error="reference_collision",
        message=f"Could not allocate a unique {record_type} number. Nothing was created; try again shortly.",
    )


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------


def create_lead(ctx: OperationContext, params: CreateLeadParams) -> Outcome:
    with ctx.session_factory() as session:
        lead = Lead(
            customer_name=params.name,
            company_name=(params.company_name or "").strip() or None,
            customer_email=str(params.email),
            customer_phone=params.phone,
            address=(params.address or "").strip() or None,
            service_type=params.service_type,
            description=(params.description or "").strip()
            or f"{params.service_type} needed at {params.address or 'address TBD'}",
            estimated_value=params.estimated_value,
            status="NEW",
            created_by_id=ctx.principal.id,
        )
        session.add(lead)
        session.flush()
        _audit(session, ctx.principal, "create_lead", "lead", lead.id, f"Lead for {lead.customer_name}")
        session.commit()

    return Success(
        payload={"lead_id": lead.id, "status": lead.status},
        message=(
            f"Lead {lead.id} created for {lead.customer_name} "
            f"({lead.customer_email}, {lead.customer_phone}), service: {lead.service_type}. Status: NEW."
        ),
    )


def list_leads(ctx: OperationContext, params: ListLeadsParams) -> Outcome:
    with ctx.session_factory() as session:
        query = select(Lead).order_by(Lead.created_at.desc(), Lead.id.desc())
        if params.status:
            query = query.where(Lead.status == params.status)
        leads = session.scalars(query.limit(params.limit)).all()

    suffix = f" with status {params.status}" if params.status else ""
    if not leads:
        return Success(payload={"leads": []}, message=f"No leads found{suffix}.")

    lines = [
        f"- ID {lead.id}: {lead.customer_name} | {lead.service_type} | {lead.status} | {_money(lead.estimated_value)}"
        for lead in leads
    ]
    return Success(
        payload={"leads": [{"id": lead.id, "name": lead.customer_name, "status": lead.status} for lead in leads]},
        message=f"Found {len(leads)} lead(s){suffix}:\n" + "\n".join(lines),
    )


def get_lead_details(ctx: OperationContext, params: LeadRefParams) -> Outcome:
    with ctx.session_factory() as session:
        lead = session.get(Lead, params.lead_id)
    if lead is None:
        return _not_found("Lead", params.lead_id)

    details = {
        "id": lead.id,
        "name": lead.customer_name,
        "company": lead.company_name,
        "email": lead.customer_email,
        "phone": lead.customer_phone,
        "address": lead.address,
        "service_type": lead.service_type,
        "description": lead.description,
        "estimated_value": lead.estimated_value,
        "status": lead.status,
    }
    return Success(
        payload={"lead": details},
        message=(
            f"Lead {lead.id}: {lead.customer_name} <{lead.customer_email}>, {lead.customer_phone}, "
            f"{lead.service_type}, status {lead.status}."
        ),
    )


def update_lead_status(ctx: OperationContext, params: UpdateLeadStatusParams) -> Outcome:
    with ctx.session_factory() as session:
        lead = session.get(Lead, params.lead_id)
        if lead is None:
            return _not_found("Lead", params.lead_id)
        previous = lead.status
        lead.status = params.status
        _audit(session, ctx.principal, "update_lead_status", "lead", lead.id, f"{previous} -> {params.status}")
        session.commit()

    return Success(
        payload={"lead_id": params.lead_id, "previous_status": previous, "status": params.status},
        message=f"Lead {params.lead_id} moved from {previous} to {params.status}.",
    )


def get_sales_summary(ctx: OperationContext, params: NoParams) -> Outcome:
    with ctx.session_factory() as session:
        rows = session.execute(
            select(Lead.status, func.count(Lead.id), func.coalesce(func.sum(Lead.estimated_value), 0)).group_by(
                Lead.status
            )
        ).all()
        quotation_total = session.scalar(select(func.coalesce(func.sum(Quotation.total), 0))) or 0

    by_status = {status: {"count": count, "value": float(value)} for status, count, value in rows}
    total_leads = sum(item["count"] for item in by_status.values())
    won = by_status.get("WON", {"count": 0, "value": 0.0})
    open_value = sum(item["value"] for status, item in by_status.items() if status not in ("WON", "LOST"))

    lines = [f"- {status}: {item['count']}" for status, item in sorted(by_status.items())]
    return Success(
        payload={
            "total_leads": total_leads,
            "by_status": by_status,
            "won_value": won["value"],
            "open_pipeline_value": open_value,
            "quoted_value": float(quotation_total),
        },
        message=(
            f"{total_leads} lead(s) in the pipeline. Open pipeline value {_money(open_value)}, "
            f"won {_money(won['value'])}, quoted {_money(quotation_total)}.\n" + "\n".join(lines)
        ).rstrip(),
    )


# ---------------------------------------------------------------------------
# Quotations
# ---------------------------------------------------------------------------


def create_quotation(ctx: OperationContext, params: CreateQuotationParams) -> Outcome:
    with ctx.session_factory() as session:
        lead = session.get(Lead, params.lead_id)
    if lead is None:
        return _not_found("Lead", params.lead_id)

    tax = round(params.estimated_amount * VAT_RATE, 2)

    def write(session: Session, quote_number: str) -> Quotation:
        quotation = Quotation(
            quote_number=quote_number,
            lead_id=lead.id,
            customer_name=lead.customer_name,
            customer_email=lead.customer_email,
            customer_phone=lead.customer_phone,
            address=lead.address or "",
            items=[{"description": params.description, "quantity": 1, "unit_price": params.estimated_amount}],
            subtotal=params.estimated_amount,
            tax=tax,
            total=params.estimated_amount + tax,
            status="DRAFT",
            valid_until=params.valid_until,
            notes=params.notes,
            created_by_id=ctx.principal.id,
        )
        session.add(quotation)
        session.flush()
        _audit(session, ctx.principal, "create_quotation", "quotation", quotation.id, quote_number)
        return quotation

    try:
        quotation = _create_numbered(ctx, ctx.config.quotation_prefix, (Quotation,), "quote_number", write)
    except IntegrityError as exc:
        if not is_unique_violation(exc, "quote_number"):
            raise
        return _collision_failure("quotation")

    return Success(
        payload={"quotation_id": quotation.id, "quote_number": quotation.quote_number, "total": quotation.total},
        message=(
            f"Quotation {quotation.quote_number} (ID {quotation.id}) created for {quotation.customer_name}, "
            f"lead {lead.id}: {_money(quotation.total)} incl. VAT. Status: DRAFT."
        ),
    )


def list_quotations(ctx: OperationContext, params: ListQuotationsParams) -> Outcome:
    with ctx.session_factory() as session:
        query = select(Quotation)
        count_query = select(func.count(Quotation.id))
        if params.status:
            query = query.where(Quotation.status == params.status)
            count_query = count_query.where(Quotation.status == params.status)
        quotations = session.scalars(
            query.order_by(Quotation.created_at.desc(), Quotation.id.desc()).limit(LIST_LIMIT)
        ).all()
        total = session.scalar(count_query) or 0

    suffix = f" with status {params.status}" if params.status else ""
    if not quotations:
        return Success(payload={"total": 0, "quotations": []}, message=f"No quotations found{suffix}.")

    lines = [
        f"- ID {q.id}: {q.quote_number} | {q.customer_name} | {_money(q.total)} | {q.status}"
        + (f" | Lead {q.lead_id}" if q.lead_id else "")
        for q in quotations
    ]
    message = f"Found {total} quotation(s){suffix}:\n" + "\n".join(lines)
    if total > LIST_LIMIT:
        message += f"\n(Showing most recent {LIST_LIMIT} of {total})"
    return Success(
        payload={
            "total": total,
            "quotations": [{"id": q.id, "quote_number": q.quote_number, "status": q.status} for q in quotations],
        },
        message=message,
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


def create_invoice(ctx: OperationContext, params: CreateInvoiceParams) -> Outcome:
    if params.project_id is not None:
        with ctx.session_factory() as session:
            if session.get(Project, params.project_id) is None:
                return _not_found("Project", params.project_id)

    tax = round(params.amount * VAT_RATE, 2)
    # Contractor portals draft invoices for review; staff invoices go straight to review.
    status = "DRAFT" if ctx.principal.role in CONTRACTOR_ROLES else "PENDING_REVIEW"

    def write(session: Session, invoice_number: str) -> Invoice:
        invoice = Invoice(
            invoice_number=invoice_number,
            customer_name=params.customer_name,
            customer_email=str(params.customer_email),
            customer_phone=params.customer_phone or "",
            address=params.address or "",
            items=[
                {
                    "description": params.description,
                    "quantity": 1,
                    "unit_price": params.amount,
                    "total": params.amount,
                    "unit_of_measure": "service",
                }
            ],
            subtotal=params.amount,
            tax=tax,
            total=params.amount + tax,
            status=status,
            due_date=params.due_date,
            project_id=params.project_id,
            created_by_id=ctx.principal.id,
        )
        session.add(invoice)
        session.flush()
        _audit(session, ctx.principal, "create_invoice", "invoice", invoice.id, invoice_number)
        return invoice

    try:
        invoice = _create_numbered(
            ctx, ctx.config.invoice_prefix, (Invoice, PropertyManagerInvoice), "invoice_number", write
        )
    except IntegrityError as exc:
        if not is_unique_violation(exc, "invoice_number"):
            raise
        return _collision_failure("invoice")

    return Success(
        payload={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number, "total": invoice.total},
        message=(
            f"Invoice {invoice.invoice_number} (ID {invoice.id}) created for {invoice.customer_name}: "
            f"{_money(invoice.total)} incl. VAT. Status: {invoice.status}."
        ),
    )


def list_invoices(ctx: OperationContext, params: ListInvoicesParams) -> Outcome:
    with ctx.session_factory() as session:
        query = select(Invoice).order_by(Invoice.created_at.desc(), Invoice.id.desc())
        if params.status:
            query = query.where(Invoice.status == params.status)
        invoices = session.scalars(query.limit(LIST_LIMIT)).all()

    suffix = f" with status {params.status}" if params.status else ""
    if not invoices:
        return Success(payload={"invoices": []}, message=f"No invoices found{suffix}.")

    lines = [f"- ID {i.id}: {i.invoice_number} | {i.customer_name} | {_money(i.total)} | {i.status}" for i in invoices]
    return Success(
        payload={
            "invoices": [{"id": i.id, "invoice_number": i.invoice_number, "status": i.status} for i in invoices]
        },
        message=f"Found {len(invoices)} invoice(s){suffix}:\n" + "\n".join(lines),
    )


def update_invoice_status(ctx: OperationContext, params: UpdateInvoiceStatusParams) -> Outcome:
    with ctx.session_factory() as session:
        invoice = session.get(Invoice, params.invoice_id)
        if invoice is None:
            return _not_found("Invoice", params.invoice_id)
        if invoice.status == "PAID" and params.status != "PAID":
            return Failure(
                error="invalid_transition",
                message=f"Invoice {invoice.invoice_number} is already PAID and cannot move to {params.status}.",
            )
        previous = invoice.status
        invoice.status = params.status
        _audit(
            session,
            ctx.principal,
            "update_invoice_status",
            "invoice",
            invoice.id,
            f"{previous} -> {params.status}",
        )
        session.commit()
        number = invoice.invoice_number

    return Success(
        payload={"invoice_id": params.invoice_id, "previous_status": previous, "status": params.status},
        message=f"Invoice {number} moved from {previous} to {params.status}.",
    )


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def create_order(ctx: OperationContext, params: CreateOrderParams) -> Outcome:
    if params.property_manager_id is not None:
        with ctx.session_factory() as session:
            manager = session.get(User, params.property_manager_id)
        if manager is None or manager.role != "PROPERTY_MANAGER":
            return _not_found("Property manager", params.property_manager_id)

    def write(session: Session, order_number: str) -> Order:
        order = Order(
            order_number=order_number,
            customer_name=params.customer_name,
            customer_email=str(params.customer_email) if params.customer_email else None,
            customer_phone=params.customer_phone,
            address=params.address,
            service_type=(params.service_type or "").strip() or "General",
            description=params.description,
            priority=params.priority,
            status="PENDING",
            due_date=params.due_date,
            estimated_cost=params.estimated_cost,
            property_manager_id=params.property_manager_id,
            created_by_id=ctx.principal.id,
        )
        session.add(order)
        session.flush()
        _audit(session, ctx.principal, "create_order", "order", order.id, order_number)
        return order

    try:
        order = _create_numbered(ctx, ctx.config.order_prefix, (Order,), "order_number", write)
    except IntegrityError as exc:
        if not is_unique_violation(exc, "order_number"):
            raise
        return _collision_failure("order")

    return Success(
        payload={"order_id": order.id, "order_number": order.order_number, "status": order.status},
        message=(
            f"Order {order.order_number} (ID {order.id}) created for {order.customer_name}, "
            f"priority {order.priority}. Status: PENDING."
        ),
    )


def _completion_items(order: Order) -> list[dict[str, Any]]:
    cost = order.estimated_cost or 0
    return [
        {
            "description": f"{order.service_type} - {order.description}",
            "quantity": 1,
            "unit_price": cost,
            "total": cost,
            "unit_of_measure": "Sum",
        }
    ]


class OrderAlreadyCompleted(Exception):
    """Raised inside a write when another request completed the order first."""


def _claim_order(session: Session, order_id: int, status: str) -> bool:
    """
    Move the order to `status` unless it is COMPLETED, as one conditional UPDATE.

    The row lock taken by the UPDATE serializes concurrent writers, so only
    one of them can ever complete a given order.
    """
    result = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status != "COMPLETED")
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _append_note(order: Order, notes: str | None) -> None:
    if notes:
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        order.notes = f"{order.notes or ''}\n[{stamp}] {notes}".lstrip()


def _already_completed(order: Order, status: str) -> Outcome:
    if status == "COMPLETED":
        return Success(
            payload={"order_id": order.id, "previous_status": "COMPLETED", "status": "COMPLETED"},
            message=f"Order {order.order_number} is already COMPLETED. Nothing was changed.",
        )
    return Failure(
        error="invalid_transition",
        message=f"Order {order.order_number} is already COMPLETED and cannot move to {status}.",
    )


def update_order_status(ctx: OperationContext, params: UpdateOrderStatusParams) -> Outcome:
    with ctx.session_factory() as session:
        order = session.get(Order, params.order_id)
    if order is None:
        return _not_found("Order", params.order_id)
    if order.status == "COMPLETED":
        return _already_completed(order, params.status)
    previous = order.status

    if params.status != "COMPLETED":
        with ctx.session_factory() as session:
            if not _claim_order(session, params.order_id, params.status):
                session.rollback()
                return _already_completed(order, params.status)
            current = session.get(Order, params.order_id)
            _append_note(current, params.notes)
            _audit(session, ctx.principal, "update_order_status", "order", current.id, f"{previous} -> {params.status}")
            session.commit()
        return Success(
            payload={"order_id": order.id, "previous_status": previous, "status": params.status},
            message=f"Order {order.order_number} moved from {previous} to {params.status}.",
        )

    # Status change and invoice land in the same transaction; a number
    # collision rolls back both and the allocator retries.
    is_pm_order = order.property_manager_id is not None

    def write(session: Session, invoice_number: str) -> tuple[Order, Any]:
        if not _claim_order(session, params.order_id, "COMPLETED"):
            raise OrderAlreadyCompleted(order.order_number)
        current = session.get(Order, params.order_id)
        _append_note(current, params.notes)
        subtotal = current.estimated_cost or 0
        tax = round(subtotal * VAT_RATE, 2)
        common = dict(
            invoice_number=invoice_number,
            customer_name=current.customer_name,
            customer_email=current.customer_email or "",
            items=_completion_items(current),
            subtotal=subtotal,
            tax=tax,
            total=subtotal + tax,
            notes=f"Auto-generated invoice for completed order {current.order_number}",
            order_id=current.id,
            created_by_id=ctx.principal.id,
        )
        if is_pm_order:
            invoice = PropertyManagerInvoice(
                property_manager_id=current.property_manager_id, status="SENT_TO_PM", **common
            )
            record_type = "property_manager_invoice"
        else:
            invoice = Invoice(
                customer_phone=current.customer_phone or "",
                address=current.address or "",
                status="PENDING_REVIEW",
                **common,
            )
            record_type = "invoice"
        session.add(invoice)
        session.flush()
        _audit(session, ctx.principal, "update_order_status", "order", current.id, f"{previous} -> {params.status}")
        _audit(session, ctx.principal, "update_order_status", record_type, invoice.id, invoice_number)
        return current, invoice

    try:
        order, invoice = _create_numbered(
            ctx, ctx.config.invoice_prefix, (Invoice, PropertyManagerInvoice), "invoice_number", write
        )
    except OrderAlreadyCompleted:
        return _already_completed(order, params.status)
    except IntegrityError as exc:
        if not is_unique_violation(exc, "invoice_number"):
            raise
        return _collision_failure("invoice")

    _send_completion_email(ctx, order, invoice)
    if is_pm_order:
        ctx.notifier.notify(
            order.property_manager_id,
            f"Invoice {invoice.invoice_number}",
            f"Order {order.order_number} is complete. Invoice total {_money(invoice.total)}.",
        )

    return Success(
        payload={
            "order_id": order.id,
            "previous_status": previous,
            "status": order.status,
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
        },
        message=(
            f"Order {order.order_number} moved from {previous} to COMPLETED. "
            f"Invoice {invoice.invoice_number} issued for {_money(invoice.total)} incl. VAT."
        ),
    )


def _send_completion_email(ctx: OperationContext, order: Order, invoice: Any) -> None:
    if not order.customer_email:
        return
    body = f"Hi {order.customer_name},\n\nYour order {order.order_number} ({order.service_type}) is complete."
    body += f"\nInvoice {invoice.invoice_number} for {_money(invoice.total)} will follow."
    ctx.notifier.send_email(order.customer_email, f"Order {order.order_number} completed", body)


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


def create_project(ctx: OperationContext, params: CreateProjectParams) -> Outcome:
    def write(session: Session, project_number: str) -> Project:
        project = Project(
            project_number=project_number,
            name=params.name,
            description=params.description,
            customer_name=params.customer_name,
            budget=params.budget,
            status="PLANNING",
            progress_percentage=0,
            start_date=params.start_date,
            end_date=params.end_date,
            created_by_id=ctx.principal.id,
        )
        session.add(project)
        session.flush()
        _audit(session, ctx.principal, "create_project", "project", project.id, project_number)
        return project

    try:
        project = _create_numbered(ctx, ctx.config.project_prefix, (Project,), "project_number", write)
    except IntegrityError as exc:
        if not is_unique_violation(exc, "project_number"):
            raise
        return _collision_failure("project")

    return Success(
        payload={"project_id": project.id, "project_number": project.project_number},
        message=(
            f"Project {project.project_number} '{project.name}' (ID {project.id}) created "
            f"with budget {_money(project.budget)}. Status: PLANNING."
        ),
    )


def list_projects(ctx: OperationContext, params: ListProjectsParams) -> Outcome:
    with ctx.session_factory() as session:
        query = select(Project).order_by(Project.created_at.desc(), Project.id.desc())
        if params.status:
            query = query.where(Project.status == params.status)
        projects = session.scalars(query.limit(LIST_LIMIT)).all()

    suffix = f" with status {params.status}" if params.status else ""
    if not projects:
        return Success(payload={"projects": []}, message=f"No projects found{suffix}.")

    lines = [
        f"- ID {p.id}: {p.project_number} | {p.name} | {p.status} | {p.progress_percentage}% | {_money(p.budget)}"
        for p in projects
    ]
    return Success(
        payload={"projects": [{"id": p.id, "project_number": p.project_number, "status": p.status} for p in projects]},
        message=f"Found {len(projects)} project(s){suffix}:\n" + "\n".join(lines),
    )


def update_project_status(ctx: OperationContext, params: UpdateProjectStatusParams) -> Outcome:
    with ctx.session_factory() as session:
        project = session.get(Project, params.project_id)
        if project is None:
            return _not_found("Project", params.project_id)
        previous = project.status
        project.status = params.status
        if params.status == "COMPLETED":
            project.progress_percentage = 100
        elif params.progress_percentage is not None:
            project.progress_percentage = params.progress_percentage
        _audit(
            session,
            ctx.principal,
            "update_project_status",
            "project",
            project.id,
            f"{previous} -> {params.status} ({project.progress_percentage}%)",
        )
        session.commit()

    return Success(
        payload={
            "project_id": project.id,
            "previous_status": previous,
            "status": project.status,
            "progress_percentage": project.progress_percentage,
        },
        message=(
            f"Project {project.project_number} moved from {previous} to {project.status} "
            f"({project.progress_percentage}% complete)."
        ),
    )


# ---------------------------------------------------------------------------
# Finance
# ---------------------------------------------------------------------------


def query_financial_metrics(ctx: OperationContext, params: FinancialMetricsParams) -> Outcome:
    since = datetime.now(timezone.utc) - timedelta(days=30)

    with ctx.session_factory() as session:
        if params.metric_type == "REVENUE":
            value = sum(
                session.scalar(
                    select(func.coalesce(func.sum(model.total), 0)).where(
                        model.status == "PAID", model.updated_at >= since
                    )
                )
                or 0
                for model in (Invoice, PropertyManagerInvoice)
            )
            label = f"Revenue from paid invoices (last 30 days): {_money(value)}"
        elif params.metric_type == "OUTSTANDING":
            value = session.scalar(
                select(func.coalesce(func.sum(Invoice.total), 0)).where(
                    Invoice.status.in_(("PENDING_REVIEW", "PENDING_APPROVAL", "SENT", "OVERDUE"))
                )
            ) or 0
            label = f"Outstanding receivables: {_money(value)}"
        elif params.metric_type == "PIPELINE_VALUE":
            value = session.scalar(
                select(func.coalesce(func.sum(Lead.estimated_value), 0)).where(Lead.status.not_in(("WON", "LOST")))
            ) or 0
            label = f"Open pipeline value: {_money(value)}"
        elif params.metric_type == "CUSTOMER_COUNT":
            value = count_rows(session, Lead)
            label = f"Customers and prospects on record: {value}"
        else:
            value = session.scalar(select(func.count(User.id)).where(User.role.in_(STAFF_ROLES))) or 0
            label = f"Employees: {value}"

    return Success(payload={"metric_type": params.metric_type, "value": value}, message=label)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


CATALOG: tuple[OperationSpec, ...] = (
    OperationSpec(
        name="create_lead",
        params=CreateLeadParams,
        description=(
            "Create a new lead/prospect in the CRM. This writes to the database. "
            "Required: name, email, phone, service_type. Ask the user for anything missing "
            "before calling."
        ),
        handler=create_lead,
        permission=auth.MANAGE_LEADS,
    ),
    OperationSpec(
        name="list_leads",
        params=ListLeadsParams,
        description="List leads, newest first, optionally filtered by status.",
        handler=list_leads,
        permission=auth.VIEW_LEADS,
    ),
    OperationSpec(
        name="get_lead_details",
        params=LeadRefParams,
        description="Get full details of one lead by ID. Use before quoting or invoicing a lead.",
        handler=get_lead_details,
        permission=auth.VIEW_LEADS,
    ),
    OperationSpec(
        name="update_lead_status",
        params=UpdateLeadStatusParams,
        description="Move a lead through the sales workflow: NEW, CONTACTED, QUALIFIED, PROPOSAL_SENT, NEGOTIATION, WON, LOST.",
        handler=update_lead_status,
        permission=auth.MANAGE_LEADS,
    ),
    OperationSpec(
        name="get_sales_summary",
        params=NoParams,
        description="Summarize the sales pipeline: lead counts per status, pipeline value, won value.",
        handler=get_sales_summary,
        permission=auth.VIEW_LEADS,
    ),
    OperationSpec(
        name="create_quotation",
        params=CreateQuotationParams,
        description="Create a quotation for an existing lead. Customer details are taken from the lead.",
        handler=create_quotation,
        permission=auth.MANAGE_QUOTATIONS,
    ),
    OperationSpec(
        name="list_quotations",
        params=ListQuotationsParams,
        description="List and count quotations, optionally filtered by status.",
        handler=list_quotations,
        permission=auth.VIEW_QUOTATIONS,
    ),
    OperationSpec(
        name="create_invoice",
        params=CreateInvoiceParams,
        description="Create a customer invoice. VAT is added to the amount.",
        handler=create_invoice,
        permission=auth.MANAGE_INVOICES,
    ),
    OperationSpec(
        name="list_invoices",
        params=ListInvoicesParams,
        description="List invoices, newest first, optionally filtered by status.",
        handler=list_invoices,
        permission=auth.VIEW_INVOICES,
    ),
    OperationSpec(
        name="update_invoice_status",
        params=UpdateInvoiceStatusParams,
        description="Change an invoice's status (e.g. mark as SENT or PAID).",
        handler=update_invoice_status,
        permission=auth.MANAGE_INVOICES,
    ),
    OperationSpec(
        name="create_order",
        params=CreateOrderParams,
        description="Create a work order/job.",
        handler=create_order,
        permission=auth.MANAGE_ORDERS,
    ),
    OperationSpec(
        name="update_order_status",
        params=UpdateOrderStatusParams,
        description=(
            "Change an order's status. Completing an order with a cost issues its invoice "
            "and emails the customer."
        ),
        handler=update_order_status,
        permission=auth.MANAGE_ORDERS,
    ),
    OperationSpec(
        name="create_project",
        params=CreateProjectParams,
        description="Create a project with budget and timeline.",
        handler=create_project,
        permission=auth.MANAGE_PROJECTS,
    ),
    OperationSpec(
        name="list_projects",
        params=ListProjectsParams,
        description="List projects, optionally filtered by status.",
        handler=list_projects,
        permission=auth.VIEW_PROJECTS,
    ),
    OperationSpec(
        name="update_project_status",
        params=UpdateProjectStatusParams,
        description="Update a project's status and progress percentage.",
        handler=update_project_status,
        permission=auth.MANAGE_PROJECTS,
    ),
    OperationSpec(
        name="query_financial_metrics",
        params=FinancialMetricsParams,
        description="Compute a financial metric: REVENUE, OUTSTANDING, PIPELINE_VALUE, CUSTOMER_COUNT, EMPLOYEE_COUNT.",
        handler=query_financial_metrics,
        permission=auth.VIEW_FINANCIAL_REPORTS,
    ),
)
