"""
Invoice engine and quote registry.

Owns everything that derives values for invoices and quotes:

- line item cleaning and total arithmetic (``compute_totals`` is the only
  place totals are calculated on the server)
- document numbering (``RE-2026-001`` / ``OFF-2026-001``) backed by an
  atomic per-year counter
- manual creation, update (items replaced wholesale) and deletion
- conversion of unbilled, billable time entries into an invoice

Every multi-row write runs inside ``unit_of_work()`` so a failure leaves
no half-written invoice behind.
"""
from __future__ import annotations

from datetime import date, datetime

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from errors import NoBillableEntries, NotFound, ValidationFailure
from helpers import parse_amount, parse_date, parse_optional_date, round2
from models import (
    db, unit_of_work, CompanySettings, Customer, Invoice, InvoiceItem,
    NumberSequence, Quote, QuoteItem, TimeEntry,
)

INVOICE_PREFIX = 'RE'
QUOTE_PREFIX = 'OFF'

# Caller-supplied totals may differ from ours by rounding only
TOTALS_EPSILON = 0.01


# ── Arithmetic ───────────────────────────────────────────────────────────

def compute_totals(items, tax_rate: float) -> tuple[float, float, float]:
    """Return (subtotal, tax_amount, total_amount) for item dicts with quantity/unit_price."""
    subtotal = round2(sum(item['quantity'] * item['unit_price'] for item in items))
    tax_amount = round2(subtotal * (tax_rate or 0) / 100)
    return subtotal, tax_amount, round2(subtotal + tax_amount)


def clean_items(items_data) -> list[dict]:
    """
    Normalise submitted line items.

    Items without description or with a quantity <= 0 are dropped silently;
    a negative unit price or unparseable number is a ValidationFailure.
    """
    if items_data is None:
        return []
    if not isinstance(items_data, list):
        raise ValidationFailure('items must be a list')

    cleaned = []
    for i, item in enumerate(items_data):
        if not isinstance(item, dict):
            raise ValidationFailure(f'items[{i}] must be an object')
        description = str(item.get('description') or '').strip()
        try:
            quantity = parse_amount(item.get('quantity', 1))
            unit_price = parse_amount(item.get('unit_price', 0))
        except (ValueError, TypeError):
            raise ValidationFailure(f'items[{i}] has an invalid quantity or unit_price')
        if not description or quantity <= 0:
            continue
        if unit_price < 0:
            raise ValidationFailure(f'items[{i}].unit_price must not be negative')
        cleaned.append({
            'description': description,
            'quantity': quantity,
            'unit_price': unit_price,
            'total': round2(quantity * unit_price),
            'time_entry_id': optional_int(item.get('time_entry_id'), f'items[{i}].time_entry_id'),
        })
    return cleaned


def reconcile_totals(data: dict, totals: tuple[float, float, float]) -> None:
    """Check caller-computed totals against ours, per TOTALS_MISMATCH_POLICY."""
    mismatched = []
    for key, expected in zip(('subtotal', 'tax_amount', 'total_amount'), totals):
        supplied = data.get(key)
        if supplied is None or supplied == '':
            continue
        try:
            supplied = parse_amount(supplied)
        except (ValueError, TypeError):
            raise ValidationFailure(f'{key} is not a number')
        if abs(supplied - expected) > TOTALS_EPSILON + 1e-9:
            mismatched.append(f'{key} {supplied:.2f} != {expected:.2f}')
    if not mismatched:
        return

    if current_app.config.get('TOTALS_MISMATCH_POLICY', 'reject') == 'reject':
        raise ValidationFailure('Totals do not match the line items: ' + ', '.join(mismatched))
    current_app.logger.warning('Correcting client totals (%s)', ', '.join(mismatched))


# ── Numbering ────────────────────────────────────────────────────────────

def _increment_sequence(prefix: str, year: int) -> int | None:
    result = db.session.execute(
        update(NumberSequence)
        .where(NumberSequence.prefix == prefix, NumberSequence.year == year)
        .values(last_value=NumberSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return db.session.execute(
        select(NumberSequence.last_value)
        .where(NumberSequence.prefix == prefix, NumberSequence.year == year)
    ).scalar_one()


def next_document_number(prefix: str, model_class, number_field: str, year: int | None = None) -> str:
    """
    Reserve the next number, e.g. RE-2026-004.

    Must be called inside the unit of work that inserts the document: the
    counter increment holds the row lock until that transaction ends. A
    missing counter is seeded with the number of documents already carrying
    this prefix and year.
    """
    if year is None:
        year = date.today().year
    col = getattr(model_class, number_field)

    seq = _increment_sequence(prefix, year)
    if seq is None:
        existing = model_class.query.filter(col.like(f'{prefix}-{year}-%')).count()
        try:
            with db.session.begin_nested():
                db.session.add(NumberSequence(prefix=prefix, year=year, last_value=existing))
        except IntegrityError:
            current_app.logger.info('Number sequence %s-%s created concurrently', prefix, year)
        seq = _increment_sequence(prefix, year)

    number = f'{prefix}-{year}-{seq:03d}'
    # Skip numbers a client already claimed manually
    while model_class.query.filter(col == number).first() is not None:
        seq = _increment_sequence(prefix, year)
        number = f'{prefix}-{year}-{seq:03d}'
    return number


def _requested_number(value, model_class, number_field: str, current_id=None) -> str | None:
    number = str(value or '').strip()
    if not number:
        return None
    query = model_class.query.filter(getattr(model_class, number_field) == number)
    if current_id is not None:
        query = query.filter(model_class.id != current_id)
    if query.first() is not None:
        raise ValidationFailure(f'Number {number} is already in use')
    return number


# ── Input helpers ────────────────────────────────────────────────────────

def optional_int(value, field: str) -> int | None:
    if value is None or value == '':
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        raise ValidationFailure(f'{field} must be an integer')


def _date_field(data: dict, field: str, optional: bool = False):
    try:
        if optional:
            return parse_optional_date(data.get(field))
        return parse_date(data.get(field))
    except (ValueError, TypeError):
        raise ValidationFailure(f'Invalid {field}. Use YYYY-MM-DD.')


def _status_field(value, allowed, default: str) -> str:
    status = str(value or '').strip() or default
    if status not in allowed:
        raise ValidationFailure(f'Invalid status. Valid values: {", ".join(allowed)}')
    return status


def _tax_rate_field(value, default: float) -> float:
    if value is None or value == '':
        return default
    try:
        rate = parse_amount(value)
    except (ValueError, TypeError):
        raise ValidationFailure('tax_rate is not a number')
    if rate < 0:
        raise ValidationFailure('tax_rate must not be negative')
    return rate


def require_customer(customer_id) -> Customer:
    cid = optional_int(customer_id, 'customer_id')
    if cid is None:
        raise ValidationFailure('customer_id is required')
    customer = db.session.get(Customer, cid)
    if customer is None:
        raise ValidationFailure(f'Customer {cid} does not exist')
    return customer


def document_defaults() -> tuple[float, str]:
    """Default (tax_rate, payment_terms) from the company profile or config."""
    settings = CompanySettings.get_settings()
    tax_rate = current_app.config['DEFAULT_TAX_RATE']
    payment_terms = current_app.config['DEFAULT_PAYMENT_TERMS']
    if settings is not None:
        if settings.default_tax_rate is not None:
            tax_rate = settings.default_tax_rate
        payment_terms = settings.default_payment_terms or payment_terms
    return tax_rate, payment_terms


def _text(value) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _check_time_entry_refs(items: list[dict]) -> None:
    ids = {item['time_entry_id'] for item in items if item.get('time_entry_id')}
    if not ids:
        return
    found = {row[0] for row in db.session.query(TimeEntry.id).filter(TimeEntry.id.in_(ids))}
    missing = sorted(ids - found)
    if missing:
        raise ValidationFailure(f'Time entry {missing[0]} does not exist')


# ── Invoices ─────────────────────────────────────────────────────────────

def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFound('Invoice not found')
    return invoice


def _release_time_entries(entry_ids, invoice_id: int) -> None:
    """Un-bill time entries no longer referenced by any other invoice."""
    entry_ids = {i for i in entry_ids if i is not None}
    if not entry_ids:
        return
    still_referenced = {
        row[0] for row in db.session.query(InvoiceItem.time_entry_id)
        .filter(InvoiceItem.time_entry_id.in_(entry_ids), InvoiceItem.invoice_id != invoice_id)
    }
    released = entry_ids - still_referenced
    if released:
        TimeEntry.query.filter(TimeEntry.id.in_(released)).update(
            {'is_billed': False, 'updated_at': datetime.utcnow()}, synchronize_session='fetch')
        current_app.logger.info('Released %d time entries from invoice %s', len(released), invoice_id)


def create_invoice(data: dict) -> Invoice:
    """Create an invoice from manually entered line items."""
    customer = require_customer(data.get('customer_id'))
    default_rate, default_terms = document_defaults()
    tax_rate = _tax_rate_field(data.get('tax_rate'), default_rate)
    items = clean_items(data.get('items'))
    _check_time_entry_refs(items)
    totals = compute_totals(items, tax_rate)
    reconcile_totals(data, totals)
    issue_date = _date_field(data, 'issue_date')
    due_date = _date_field(data, 'due_date', optional=True)
    status = _status_field(data.get('status'), Invoice.STATUSES, 'draft')

    with unit_of_work():
        number = (_requested_number(data.get('invoice_number'), Invoice, 'invoice_number')
                  or next_document_number(INVOICE_PREFIX, Invoice, 'invoice_number'))
        invoice = Invoice(
            invoice_number=number,
            customer_id=customer.id,
            issue_date=issue_date,
            due_date=due_date,
            status=status,
            subtotal=totals[0],
            tax_rate=tax_rate,
            tax_amount=totals[1],
            total_amount=totals[2],
            payment_terms=_text(data.get('payment_terms')) or default_terms,
            notes=_text(data.get('notes')),
        )
        for item in items:
            invoice.items.append(InvoiceItem(**item))
        db.session.add(invoice)

    current_app.logger.info('Invoice %s created (%d items, total %.2f)',
                            invoice.invoice_number, len(items), invoice.total_amount)
    return invoice


def time_entry_to_item(entry: TimeEntry, customer: Customer) -> dict:
    """Invoice line for one time entry: hours at the entry's rate, else the customer's."""
    hours = entry.hours
    rate = entry.hourly_rate or customer.hourly_rate or 0.0
    return {
        'time_entry_id': entry.id,
        'description': entry.description or '',
        'quantity': hours,
        'unit_price': rate,
        'total': round2(hours * rate),
    }


def unbilled_time_entries(customer_id: int):
    """Billable, not yet billed entries of a customer, newest first."""
    return (TimeEntry.query
            .filter(TimeEntry.customer_id == customer_id,
                    TimeEntry.is_billable.is_(True),
                    TimeEntry.is_billed.is_(False))
            .order_by(TimeEntry.start_time.desc(), TimeEntry.id.desc())
            .all())


def create_invoice_from_time_entries(data: dict) -> tuple[Invoice, int]:
    """
    Turn selected time entries into a draft invoice.

    Only entries of the customer that are billable and unbilled become
    line items; other requested ids are skipped without error. All requested
    ids are marked billed afterwards, including the skipped ones.
    """
    raw_ids = data.get('time_entry_ids')
    if not data.get('customer_id') or not raw_ids:
        raise ValidationFailure('Customer ID and time entry IDs are required')
    if not isinstance(raw_ids, list):
        raise ValidationFailure('time_entry_ids must be a list')
    entry_ids = [optional_int(v, 'time_entry_ids') for v in raw_ids]
    entry_ids = [i for i in entry_ids if i is not None]
    customer = require_customer(data.get('customer_id'))

    entries = (TimeEntry.query
               .filter(TimeEntry.id.in_(entry_ids),
                       TimeEntry.customer_id == customer.id,
                       TimeEntry.is_billable.is_(True),
                       TimeEntry.is_billed.is_(False))
               .order_by(TimeEntry.start_time, TimeEntry.id)
               .all())
    if not entries:
        raise NoBillableEntries()

    items = [time_entry_to_item(entry, customer) for entry in entries]
    tax_rate = current_app.config['TIME_ENTRY_TAX_RATE']
    subtotal, tax_amount, total_amount = compute_totals(items, tax_rate)
    _, default_terms = document_defaults()
    issue_date = _date_field(data, 'issue_date')
    due_date = _date_field(data, 'due_date', optional=True)

    with unit_of_work():
        invoice = Invoice(
            invoice_number=next_document_number(INVOICE_PREFIX, Invoice, 'invoice_number'),
            customer_id=customer.id,
            issue_date=issue_date,
            due_date=due_date,
            status='draft',
            subtotal=subtotal,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            total_amount=total_amount,
            payment_terms=_text(data.get('payment_terms')) or default_terms,
            notes=_text(data.get('notes')),
        )
        for item in items:
            invoice.items.append(InvoiceItem(**item))
        db.session.add(invoice)
        db.session.flush()

        db.session.execute(
            update(TimeEntry)
            .where(TimeEntry.id.in_(entry_ids))
            .values(is_billed=True, updated_at=datetime.utcnow())
            .execution_options(synchronize_session='fetch')
        )

    current_app.logger.info('Invoice %s created from %d of %d time entries for customer %s',
                            invoice.invoice_number, len(items), len(entry_ids), customer.id)
    return invoice, len(items)


def update_invoice(invoice_id: int, data: dict) -> Invoice:
    """
    Apply a partial update. Supplied items replace the existing ones.

    Totals are recomputed from the items and the tax rate in any case.
    """
    invoice = get_invoice(invoice_id)

    changes = {}
    if 'customer_id' in data:
        changes['customer_id'] = require_customer(data['customer_id']).id
    if 'invoice_number' in data:
        number = _requested_number(data['invoice_number'], Invoice, 'invoice_number', invoice.id)
        if number:
            changes['invoice_number'] = number
    if 'issue_date' in data:
        changes['issue_date'] = _date_field(data, 'issue_date')
    if 'due_date' in data:
        changes['due_date'] = _date_field(data, 'due_date', optional=True)
    if 'status' in data:
        changes['status'] = _status_field(data['status'], Invoice.STATUSES, invoice.status)
    if 'tax_rate' in data:
        changes['tax_rate'] = _tax_rate_field(data['tax_rate'], invoice.tax_rate)
    if 'payment_terms' in data:
        changes['payment_terms'] = _text(data['payment_terms']) or invoice.payment_terms
    if 'notes' in data:
        changes['notes'] = _text(data['notes'])

    replace_items = 'items' in data and data['items'] is not None
    if replace_items:
        items = clean_items(data['items'])
        _check_time_entry_refs(items)
    else:
        items = [{'quantity': i.quantity, 'unit_price': i.unit_price} for i in invoice.items]
    totals = compute_totals(items, changes.get('tax_rate', invoice.tax_rate))
    reconcile_totals(data, totals)

    with unit_of_work():
        for field, value in changes.items():
            setattr(invoice, field, value)
        if replace_items:
            old_entry_ids = {i.time_entry_id for i in invoice.items}
            invoice.items.clear()
            for item in items:
                invoice.items.append(InvoiceItem(**item))
            db.session.flush()
            kept = {item['time_entry_id'] for item in items}
            _release_time_entries(old_entry_ids - kept, invoice.id)
        invoice.subtotal, invoice.tax_amount, invoice.total_amount = totals

    current_app.logger.info('Invoice %s updated', invoice.invoice_number)
    return invoice


def delete_invoice(invoice_id: int) -> None:
    """Delete an invoice with its items and un-bill the time entries behind them."""
    invoice = get_invoice(invoice_id)
    number = invoice.invoice_number
    entry_ids = {i.time_entry_id for i in invoice.items}
    with unit_of_work():
        _release_time_entries(entry_ids, invoice.id)
        db.session.delete(invoice)
    current_app.logger.info('Invoice %s deleted', number)


# ── Quotes ───────────────────────────────────────────────────────────────

def get_quote(quote_id: int) -> Quote:
    quote = db.session.get(Quote, quote_id)
    if quote is None:
        raise NotFound('Quote not found')
    return quote


def _quote_item(item: dict) -> QuoteItem:
    return QuoteItem(
        description=item['description'],
        quantity=item['quantity'],
        unit_price=item['unit_price'],
        total=item['total'],
    )


def create_quote(data: dict) -> Quote:
    customer = require_customer(data.get('customer_id'))
    default_rate, _ = document_defaults()
    tax_rate = _tax_rate_field(data.get('tax_rate'), default_rate)
    items = clean_items(data.get('items'))
    totals = compute_totals(items, tax_rate)
    reconcile_totals(data, totals)
    issue_date = _date_field(data, 'issue_date')
    valid_until = _date_field(data, 'valid_until', optional=True)
    status = _status_field(data.get('status'), Quote.STATUSES, 'draft')

    with unit_of_work():
        number = (_requested_number(data.get('quote_number'), Quote, 'quote_number')
                  or next_document_number(QUOTE_PREFIX, Quote, 'quote_number'))
        quote = Quote(
            quote_number=number,
            customer_id=customer.id,
            issue_date=issue_date,
            valid_until=valid_until,
            status=status,
            subtotal=totals[0],
            tax_rate=tax_rate,
            tax_amount=totals[1],
            total_amount=totals[2],
            notes=_text(data.get('notes')),
            terms_conditions=_text(data.get('terms_conditions')),
        )
        for item in items:
            quote.items.append(_quote_item(item))
        db.session.add(quote)

    current_app.logger.info('Quote %s created', quote.quote_number)
    return quote


def update_quote(quote_id: int, data: dict) -> Quote:
    quote = get_quote(quote_id)

    changes = {}
    if 'customer_id' in data:
        changes['customer_id'] = require_customer(data['customer_id']).id
    if 'quote_number' in data:
        number = _requested_number(data['quote_number'], Quote, 'quote_number', quote.id)
        if number:
            changes['quote_number'] = number
    if 'issue_date' in data:
        changes['issue_date'] = _date_field(data, 'issue_date')
    if 'valid_until' in data:
        changes['valid_until'] = _date_field(data, 'valid_until', optional=True)
    if 'status' in data:
        changes['status'] = _status_field(data['status'], Quote.STATUSES, quote.status)
    if 'tax_rate' in data:
        changes['tax_rate'] = _tax_rate_field(data['tax_rate'], quote.tax_rate)
    for field in ('notes', 'terms_conditions'):
        if field in data:
            changes[field] = _text(data[field])

    replace_items = 'items' in data and data['items'] is not None
    if replace_items:
        items = clean_items(data['items'])
    else:
        items = [{'quantity': i.quantity, 'unit_price': i.unit_price} for i in quote.items]
    totals = compute_totals(items, changes.get('tax_rate', quote.tax_rate))
    reconcile_totals(data, totals)

    with unit_of_work():
        for field, value in changes.items():
            setattr(quote, field, value)
        if replace_items:
            quote.items.clear()
            for item in items:
                quote.items.append(_quote_item(item))
        quote.subtotal, quote.tax_amount, quote.total_amount = totals

    return quote


def delete_quote(quote_id: int) -> None:
    quote = get_quote(quote_id)
    with unit_of_work():
        db.session.delete(quote)
    current_app.logger.info('Quote %s deleted', quote.quote_number)
