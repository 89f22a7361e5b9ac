"""
Accounting blueprint – income/expense ledger under /api/accounting.

Categories, VAT rates, entries (with inline receipt images), the yearly
summary report and QR templates for the mobile receipt upload.
"""

from datetime import date

from flask import Blueprint, jsonify, request, url_for

import ledger
from blueprints.api import iso, json_payload
from errors import ValidationFailure, storage_errors
from models import AccountingCategory, QrTemplate, VatRate

accounting_bp = Blueprint('accounting', __name__)


def _category_to_dict(c):
    return {
        'id': c.id,
        'name': c.name,
        'type': c.type,
        'color': c.color,
        'description': c.description,
        'tax_deductible': c.tax_deductible,
        'is_active': c.is_active,
    }


def _vat_rate_to_dict(v):
    return {
        'id': v.id,
        'name': v.name,
        'rate': v.rate,
        'description': v.description,
        'is_default': v.is_default,
        'is_active': v.is_active,
    }


def _entry_to_dict(e):
    return {
        'id': e.id,
        'entry_type': e.entry_type,
        'amount': e.amount,
        'vat_rate': e.vat_rate,
        'vat_amount': e.vat_amount,
        'total_amount': e.total_amount,
        'entry_date': iso(e.entry_date),
        'description': e.description,
        'receipt_number': e.receipt_number,
        'category_id': e.category_id,
        'category_name': e.category.name if e.category else None,
        'category_color': e.category.color if e.category else None,
        'customer_id': e.customer_id,
        'company_name': e.customer.company_name if e.customer else None,
        'project_id': e.project_id,
        'project_name': e.project.name if e.project else None,
        'receipt_image_url': e.receipt_image_url,
        'notes': e.notes,
        'status': e.status,
        'created_at': iso(e.created_at),
        'updated_at': iso(e.updated_at),
    }


def _template_to_dict(t):
    return {
        'id': t.id,
        'name': t.name,
        'type': t.type,
        'description': t.description,
        'target_url': t.target_url,
        'validity_hours': t.validity_hours,
        'is_active': t.is_active,
        'created_at': iso(t.created_at),
    }


def _uploaded_file():
    file = request.files.get('file') or request.files.get('receipt')
    if file is None or not file.filename:
        raise ValidationFailure('No receipt file uploaded')
    return file


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@accounting_bp.route('/categories', methods=['GET'])
@storage_errors('Failed to fetch categories')
def list_categories():
    """Active categories; ?include_inactive=1 lists disabled ones too."""
    query = AccountingCategory.query
    if request.args.get('include_inactive') not in ('1', 'true'):
        query = query.filter_by(is_active=True)
    entry_type = request.args.get('type')
    if entry_type:
        query = query.filter_by(type=entry_type)
    categories = query.order_by(AccountingCategory.type, AccountingCategory.name).all()
    return jsonify({'categories': [_category_to_dict(c) for c in categories]})


@accounting_bp.route('/categories', methods=['POST'])
@storage_errors('Failed to create category')
def create_category():
    """Body: { name, type: income|expense, color?, description?, tax_deductible? }"""
    category = ledger.save_category(json_payload())
    return jsonify({'category': _category_to_dict(category)}), 201


@accounting_bp.route('/categories/<int:category_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update category')
def update_category(category_id):
    category = ledger.save_category(json_payload(), ledger.get_category(category_id))
    return jsonify({'category': _category_to_dict(category)})


@accounting_bp.route('/categories/<int:category_id>', methods=['DELETE'])
@storage_errors('Failed to delete category')
def delete_category(category_id):
    """Disable a category; existing entries keep it."""
    ledger.deactivate_category(category_id)
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# VAT rates
# ---------------------------------------------------------------------------

@accounting_bp.route('/vat-rates', methods=['GET'])
@storage_errors('Failed to fetch VAT rates')
def list_vat_rates():
    rates = VatRate.query.filter_by(is_active=True).order_by(VatRate.rate.desc()).all()
    return jsonify({'vatRates': [_vat_rate_to_dict(v) for v in rates]})


@accounting_bp.route('/vat-rates', methods=['POST'])
@storage_errors('Failed to create VAT rate')
def create_vat_rate():
    """Body: { name, rate, description?, is_default? }"""
    vat_rate = ledger.create_vat_rate(json_payload())
    return jsonify({'vatRate': _vat_rate_to_dict(vat_rate)}), 201


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------

@accounting_bp.route('/entries', methods=['GET'])
@storage_errors('Failed to fetch accounting entries')
def list_entries():
    """
    List entries, newest first.
    Query params: type, status, category_id, year
    """
    entries = ledger.list_entries(
        entry_type=request.args.get('type') or None,
        status=request.args.get('status') or None,
        category_id=request.args.get('category_id', type=int),
        year=request.args.get('year', type=int),
    )
    return jsonify({'entries': [_entry_to_dict(e) for e in entries]})


@accounting_bp.route('/entries', methods=['POST'])
@storage_errors('Failed to create accounting entry')
def create_entry():
    """
    Create an entry. vat_amount and total_amount are derived when omitted.
    Body: {
        entry_type:   "income" | "expense"   (required)
        amount:       number, net            (required)
        vat_rate:     number, percent        (default 0)
        description:  string                 (required)
        entry_date:   "YYYY-MM-DD"           (default today)
        vat_amount, total_amount, receipt_number, category_id,
        customer_id, project_id, notes, status   (optional)
    }
    """
    entry = ledger.save_entry(json_payload())
    return jsonify({'entry': _entry_to_dict(entry)}), 201


@accounting_bp.route('/entries/<int:entry_id>', methods=['GET'])
@storage_errors('Failed to fetch accounting entry')
def get_entry(entry_id):
    return jsonify({'entry': _entry_to_dict(ledger.get_entry(entry_id))})


@accounting_bp.route('/entries/<int:entry_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update accounting entry')
def update_entry(entry_id):
    entry = ledger.save_entry(json_payload(), ledger.get_entry(entry_id))
    return jsonify({'entry': _entry_to_dict(entry)})


@accounting_bp.route('/entries/<int:entry_id>', methods=['DELETE'])
@storage_errors('Failed to delete accounting entry')
def delete_entry(entry_id):
    ledger.delete_entry(entry_id)
    return jsonify({'success': True})


@accounting_bp.route('/entries/<int:entry_id>/receipt', methods=['POST'])
@storage_errors('Failed to store receipt')
def upload_entry_receipt(entry_id):
    """Multipart upload (field 'file'); stored inline as data URI."""
    entry = ledger.attach_receipt(entry_id, _uploaded_file())
    return jsonify({'entry': _entry_to_dict(entry)})


@accounting_bp.route('/receipts', methods=['POST'])
@storage_errors('Failed to store receipt')
def upload_receipt():
    """Target of the receipt-upload QR code: creates a draft expense."""
    entry = ledger.create_entry_from_receipt(_uploaded_file(), request.form)
    return jsonify({'entry': _entry_to_dict(entry)}), 201


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@accounting_bp.route('/reports/summary', methods=['GET'])
@storage_errors('Failed to build accounting summary')
def summary():
    """Yearly totals over confirmed entries. Query param: year (default current)."""
    year = request.args.get('year', type=int) or date.today().year
    return jsonify(ledger.yearly_summary(year))


# ---------------------------------------------------------------------------
# QR templates
# ---------------------------------------------------------------------------

@accounting_bp.route('/qr-templates', methods=['GET'])
@storage_errors('Failed to fetch QR templates')
def list_qr_templates():
    templates = QrTemplate.query.filter_by(is_active=True).order_by(QrTemplate.name).all()
    return jsonify({'templates': [_template_to_dict(t) for t in templates]})


@accounting_bp.route('/qr-templates', methods=['POST'])
@storage_errors('Failed to create QR template')
def create_qr_template():
    """Body: { name, type: receipt_upload|url, target_url?, description?, validity_hours? }"""
    template = ledger.save_qr_template(json_payload())
    return jsonify({'template': _template_to_dict(template)}), 201


@accounting_bp.route('/qr-templates/<int:template_id>', methods=['DELETE'])
@storage_errors('Failed to delete QR template')
def delete_qr_template(template_id):
    ledger.deactivate_qr_template(template_id)
    return jsonify({'success': True})


@accounting_bp.route('/qr-code/<int:template_id>', methods=['GET'])
@storage_errors('Failed to generate QR code')
def qr_code(template_id):
    """QR code for a template as PNG data URI, with payload and expiry."""
    upload_url = url_for('accounting.upload_receipt', _external=True)
    template, payload, expires_at, image = ledger.generate_qr_code(template_id, upload_url)
    return jsonify({
        'template': _template_to_dict(template),
        'qrData': payload,
        'expiresAt': expires_at.isoformat() + 'Z',
        'image': image,
    })
