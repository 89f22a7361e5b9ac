"""
Invoicing blueprint – Invoices (Rechnungen) & Quotes (Offerten).

JSON endpoints for invoice and quote CRUD, the conversion of time entries
into an invoice, and print-ready HTML views of both document types.
All arithmetic and numbering happens in ``billing``.
"""
from __future__ import annotations

from flask import Blueprint, jsonify, render_template, request

import billing
from blueprints.api import iso, json_payload
from errors import storage_errors
from models import db, CompanySettings, Customer, Invoice, Quote

invoicing_bp = Blueprint('invoicing', __name__)
print_bp = Blueprint('print', __name__)


# ── Serialisation ────────────────────────────────────────────────────────

def _customer_fields(customer: Customer | None) -> dict:
    return {
        'company_name': customer.company_name if customer else None,
        'contact_person': customer.contact_person if customer else None,
        'email': customer.email if customer else None,
    }


def _invoice_to_dict(inv: Invoice) -> dict:
    d = {
        'id': inv.id,
        'invoice_number': inv.invoice_number,
        'customer_id': inv.customer_id,
        'issue_date': iso(inv.issue_date),
        'due_date': iso(inv.due_date),
        'status': inv.status,
        'is_overdue': inv.is_overdue,
        'subtotal': inv.subtotal,
        'tax_rate': inv.tax_rate,
        'tax_amount': inv.tax_amount,
        'total_amount': inv.total_amount,
        'payment_terms': inv.payment_terms,
        'notes': inv.notes,
        'created_at': iso(inv.created_at),
        'updated_at': iso(inv.updated_at),
    }
    d.update(_customer_fields(inv.customer))
    return d


def _invoice_item_to_dict(item) -> dict:
    entry = item.time_entry
    return {
        'id': item.id,
        'invoice_id': item.invoice_id,
        'time_entry_id': item.time_entry_id,
        'description': item.description,
        'quantity': item.quantity,
        'unit_price': item.unit_price,
        'total': item.total,
        'time_description': entry.description if entry else None,
        'start_time': iso(entry.start_time) if entry else None,
        'duration_minutes': entry.duration_minutes if entry else None,
    }


def _quote_to_dict(q: Quote) -> dict:
    d = {
        'id': q.id,
        'quote_number': q.quote_number,
        'customer_id': q.customer_id,
        'issue_date': iso(q.issue_date),
        'valid_until': iso(q.valid_until),
        'status': q.status,
        'subtotal': q.subtotal,
        'tax_rate': q.tax_rate,
        'tax_amount': q.tax_amount,
        'total_amount': q.total_amount,
        'notes': q.notes,
        'terms_conditions': q.terms_conditions,
        'created_at': iso(q.created_at),
        'updated_at': iso(q.updated_at),
    }
    d.update(_customer_fields(q.customer))
    return d


def _quote_item_to_dict(item) -> dict:
    return {
        'id': item.id,
        'quote_id': item.quote_id,
        'description': item.description,
        'quantity': item.quantity,
        'unit_price': item.unit_price,
        'total': item.total,
    }


def _filtered(query, model_class, date_column):
    status = request.args.get('status', '').strip()
    if status:
        query = query.filter(model_class.status == status)
    customer_id = request.args.get('customer_id', type=int)
    if customer_id:
        query = query.filter(model_class.customer_id == customer_id)
    year = request.args.get('year', type=int)
    if year:
        query = query.filter(db.extract('year', date_column) == year)
    return query.order_by(model_class.created_at.desc(), model_class.id.desc())


# ── Invoices ─────────────────────────────────────────────────────────────

@invoicing_bp.route('/invoices', methods=['GET'])
@storage_errors('Failed to fetch invoices')
def list_invoices():
    """List invoices with customer name/contact/email. Filters: status, customer_id, year."""
    invoices = _filtered(Invoice.query, Invoice, Invoice.issue_date).all()
    return jsonify({'invoices': [_invoice_to_dict(inv) for inv in invoices]})


@invoicing_bp.route('/invoices/<int:invoice_id>', methods=['GET'])
@storage_errors('Failed to fetch invoice')
def get_invoice(invoice_id):
    inv = billing.get_invoice(invoice_id)
    return jsonify({
        'invoice': _invoice_to_dict(inv),
        'items': [_invoice_item_to_dict(item) for item in inv.items],
    })


@invoicing_bp.route('/invoices', methods=['POST'])
@storage_errors('Failed to create invoice')
def create_invoice():
    """
    Create an invoice from manual line items.
    Body: {
        customer_id:    int            (required)
        items:          [{description, quantity, unit_price, time_entry_id?}]
        invoice_number: string         (optional, generated RE-YYYY-NNN otherwise)
        issue_date:     "YYYY-MM-DD"   (default today)
        due_date, status, tax_rate, payment_terms, notes   (optional)
        subtotal, tax_amount, total_amount                 (optional, checked)
    }
    """
    inv = billing.create_invoice(json_payload())
    return jsonify(_invoice_to_dict(inv)), 201


@invoicing_bp.route('/invoices/from-time-entries', methods=['POST'])
@storage_errors('Failed to create invoice from time entries')
def create_invoice_from_time_entries():
    """
    Body: { customer_id, time_entry_ids: [int], issue_date?, due_date?,
            payment_terms?, notes? }
    """
    inv, items_count = billing.create_invoice_from_time_entries(json_payload())
    return jsonify({
        'id': inv.id,
        'invoice_number': inv.invoice_number,
        'subtotal': inv.subtotal,
        'tax_amount': inv.tax_amount,
        'total_amount': inv.total_amount,
        'items_count': items_count,
    })


@invoicing_bp.route('/invoices/<int:invoice_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update invoice')
def update_invoice(invoice_id):
    inv = billing.update_invoice(invoice_id, json_payload())
    return jsonify(_invoice_to_dict(inv))


@invoicing_bp.route('/invoices/<int:invoice_id>', methods=['DELETE'])
@storage_errors('Failed to delete invoice')
def delete_invoice(invoice_id):
    billing.delete_invoice(invoice_id)
    return jsonify({'success': True})


# ── Quotes ───────────────────────────────────────────────────────────────

@invoicing_bp.route('/quotes', methods=['GET'])
@storage_errors('Failed to fetch quotes')
def list_quotes():
    quotes = _filtered(Quote.query, Quote, Quote.issue_date).all()
    return jsonify({'quotes': [_quote_to_dict(q) for q in quotes]})


@invoicing_bp.route('/quotes/<int:quote_id>', methods=['GET'])
@storage_errors('Failed to fetch quote')
def get_quote(quote_id):
    q = billing.get_quote(quote_id)
    return jsonify({
        'quote': _quote_to_dict(q),
        'items': [_quote_item_to_dict(item) for item in q.items],
    })


@invoicing_bp.route('/quotes', methods=['POST'])
@storage_errors('Failed to create quote')
def create_quote():
    """Body as for invoices, with valid_until and terms_conditions instead of due_date/payment_terms."""
    q = billing.create_quote(json_payload())
    return jsonify(_quote_to_dict(q)), 201


@invoicing_bp.route('/quotes/<int:quote_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update quote')
def update_quote(quote_id):
    q = billing.update_quote(quote_id, json_payload())
    return jsonify(_quote_to_dict(q))


@invoicing_bp.route('/quotes/<int:quote_id>', methods=['DELETE'])
@storage_errors('Failed to delete quote')
def delete_quote(quote_id):
    billing.delete_quote(quote_id)
    return jsonify({'success': True})


# ── Print views ──────────────────────────────────────────────────────────

@print_bp.route('/invoices/<int:invoice_id>/print')
def print_invoice(invoice_id):
    """Print-ready HTML; the browser does the PDF."""
    inv = db.get_or_404(Invoice, invoice_id)
    return render_template('print/invoice.html',
                           invoice=inv,
                           customer=inv.customer,
                           items=inv.items,
                           settings=CompanySettings.get_settings())


@print_bp.route('/quotes/<int:quote_id>/print')
def print_quote(quote_id):
    q = db.get_or_404(Quote, quote_id)
    return render_template('print/quote.html',
                           quote=q,
                           customer=q.customer,
                           items=q.items,
                           settings=CompanySettings.get_settings())
