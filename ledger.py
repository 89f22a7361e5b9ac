"""
Accounting entry ledger.

Income/expense bookings with VAT, categories, VAT rates, the yearly
summary report, receipt images stored inline as data URIs and QR codes
pointing at a URL (e.g. the mobile receipt upload).

Only entries with status ``confirmed`` count toward the summary; drafts and
reconciled entries are left out.
"""

import base64
import io
from datetime import date, datetime, timedelta

import qrcode
from flask import current_app

from errors import NotFound, ValidationFailure
from helpers import (
    calculate_tax_from_net, get_month_names, parse_amount, parse_date, round2,
)
from models import (
    db, unit_of_work, AccountingCategory, AccountingEntry, Customer, Project,
    QrTemplate, VatRate,
)

ALLOWED_RECEIPT_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}

RECEIPT_MIMETYPES = {
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': 'image/webp',
}


# =============================================================================
# VAT
# =============================================================================

def complete_vat(amount, vat_rate, vat_amount=None, total_amount=None):
    """
    Fill in whatever the caller left out.

    vat_amount defaults to amount * vat_rate / 100, total_amount to
    amount + vat_amount. Supplied values are kept as they are.
    """
    if vat_amount is None:
        _, vat_amount = calculate_tax_from_net(amount, vat_rate)
    if total_amount is None:
        total_amount = round2(amount + vat_amount)
    return vat_amount, total_amount


# =============================================================================
# FIELD PARSING
# =============================================================================

def _number(data, field, default=None, required=False):
    value = data.get(field)
    if value is None or value == '':
        if required and default is None:
            raise ValidationFailure(f'{field} is required')
        return default
    try:
        return parse_amount(value)
    except (ValueError, TypeError):
        raise ValidationFailure(f'{field} is not a number')


def _reference(data, field, model_class, default=None):
    if field not in data:
        return default
    value = data.get(field)
    if value is None or value == '':
        return None
    try:
        ref_id = int(value)
    except (ValueError, TypeError):
        raise ValidationFailure(f'{field} must be an integer')
    if db.session.get(model_class, ref_id) is None:
        raise ValidationFailure(f'{field} {ref_id} does not exist')
    return ref_id


def _choice(value, allowed, field, default):
    value = str(value or '').strip() or default
    if value not in allowed:
        raise ValidationFailure(f'Invalid {field}. Valid values: {", ".join(allowed)}')
    return value


def _flag(value, default):
    if value is None or value == '':
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


# =============================================================================
# ENTRIES
# =============================================================================

def get_entry(entry_id):
    entry = db.session.get(AccountingEntry, entry_id)
    if entry is None:
        raise NotFound('Accounting entry not found')
    return entry


def save_entry(data, entry=None):
    """Create (entry=None) or update an accounting entry."""
    is_new = entry is None

    entry_type = _choice(data.get('entry_type', None if is_new else entry.entry_type),
                         AccountingEntry.TYPES, 'entry_type', None)
    amount = _number(data, 'amount', None if is_new else entry.amount, required=True)
    vat_rate = _number(data, 'vat_rate', 0.0 if is_new else entry.vat_rate)
    if vat_rate < 0:
        raise ValidationFailure('vat_rate must not be negative')
    supplied_vat = _number(data, 'vat_amount')
    supplied_total = _number(data, 'total_amount')

    unchanged = (not is_new and supplied_vat is None and supplied_total is None
                 and amount == entry.amount and vat_rate == entry.vat_rate)
    if unchanged:
        vat_amount, total_amount = entry.vat_amount, entry.total_amount
    else:
        vat_amount, total_amount = complete_vat(amount, vat_rate, supplied_vat, supplied_total)

    description = str(data.get('description', '' if is_new else entry.description) or '').strip()
    if not description:
        raise ValidationFailure('description is required')

    if 'entry_date' in data or is_new:
        try:
            entry_date = parse_date(data.get('entry_date'))
        except (ValueError, TypeError):
            raise ValidationFailure('Invalid entry_date. Use YYYY-MM-DD.')
    else:
        entry_date = entry.entry_date

    status = _choice(data.get('status', None if is_new else entry.status),
                     AccountingEntry.STATUSES, 'status', 'draft')

    values = {
        'entry_type': entry_type,
        'amount': amount,
        'vat_rate': vat_rate,
        'vat_amount': vat_amount,
        'total_amount': total_amount,
        'entry_date': entry_date,
        'description': description,
        'status': status,
        'category_id': _reference(data, 'category_id', AccountingCategory,
                                  None if is_new else entry.category_id),
        'customer_id': _reference(data, 'customer_id', Customer,
                                  None if is_new else entry.customer_id),
        'project_id': _reference(data, 'project_id', Project,
                                 None if is_new else entry.project_id),
    }
    for field in ('receipt_number', 'notes', 'receipt_image_url'):
        if field in data or is_new:
            values[field] = str(data.get(field) or '').strip() or None

    with unit_of_work():
        if is_new:
            entry = AccountingEntry()
            db.session.add(entry)
        for field, value in values.items():
            setattr(entry, field, value)

    return entry


def delete_entry(entry_id):
    entry = get_entry(entry_id)
    with unit_of_work():
        db.session.delete(entry)


def list_entries(entry_type=None, status=None, category_id=None, year=None):
    query = AccountingEntry.query
    if entry_type:
        query = query.filter_by(entry_type=entry_type)
    if status:
        query = query.filter_by(status=status)
    if category_id:
        query = query.filter_by(category_id=category_id)
    if year:
        query = query.filter(db.extract('year', AccountingEntry.entry_date) == year)
    return query.order_by(AccountingEntry.entry_date.desc(), AccountingEntry.id.desc()).all()


# =============================================================================
# SUMMARY
# =============================================================================

def _totals(entries):
    return {
        'amount': round2(sum(e.amount for e in entries)),
        'vat_amount': round2(sum(e.vat_amount for e in entries)),
        'total_amount': round2(sum(e.total_amount for e in entries)),
        'count': len(entries),
    }


def yearly_summary(year):
    """Sums per entry type and per month over the confirmed entries of a year."""
    entries = AccountingEntry.query.filter(
        AccountingEntry.status == 'confirmed',
        db.extract('year', AccountingEntry.entry_date) == year,
    ).all()

    income = [e for e in entries if e.entry_type == 'income']
    expenses = [e for e in entries if e.entry_type == 'expense']

    months = get_month_names()
    monthly = []
    for m in range(1, 13):
        monthly.append({
            'month': m,
            'name': months[m],
            'income': _totals([e for e in income if e.entry_date.month == m]),
            'expenses': _totals([e for e in expenses if e.entry_date.month == m]),
        })

    income_totals = _totals(income)
    expense_totals = _totals(expenses)
    return {
        'year': year,
        'income': income_totals,
        'expenses': expense_totals,
        'net_profit': round2(income_totals['total_amount'] - expense_totals['total_amount']),
        'vat_owed': round2(max(0.0, income_totals['vat_amount'] - expense_totals['vat_amount'])),
        'monthly': monthly,
    }


# =============================================================================
# CATEGORIES & VAT RATES
# =============================================================================

def get_category(category_id):
    category = db.session.get(AccountingCategory, category_id)
    if category is None:
        raise NotFound('Category not found')
    return category


def save_category(data, category=None):
    is_new = category is None
    name = str(data.get('name', '' if is_new else category.name) or '').strip()
    if not name:
        raise ValidationFailure('name is required')
    cat_type = _choice(data.get('type', None if is_new else category.type),
                       AccountingCategory.TYPES, 'type', None)

    with unit_of_work():
        if is_new:
            category = AccountingCategory()
            db.session.add(category)
        category.name = name
        category.type = cat_type
        if 'color' in data or is_new:
            category.color = str(data.get('color') or '').strip() or '#6B7280'
        if 'description' in data:
            category.description = str(data.get('description') or '').strip() or None
        category.tax_deductible = _flag(data.get('tax_deductible'),
                                        True if is_new else category.tax_deductible)
        category.is_active = _flag(data.get('is_active'), True if is_new else category.is_active)
    return category


def deactivate_category(category_id):
    """Categories are never deleted; entries keep pointing at them."""
    category = get_category(category_id)
    with unit_of_work():
        category.is_active = False
    return category


def create_vat_rate(data):
    name = str(data.get('name') or '').strip()
    if not name:
        raise ValidationFailure('name is required')
    rate = _number(data, 'rate', required=True)
    if rate < 0:
        raise ValidationFailure('rate must not be negative')
    is_default = _flag(data.get('is_default'), False)

    with unit_of_work():
        if is_default:
            VatRate.query.update({'is_default': False})
        vat_rate = VatRate(
            name=name,
            rate=rate,
            description=str(data.get('description') or '').strip() or None,
            is_default=is_default,
        )
        db.session.add(vat_rate)
    return vat_rate


# =============================================================================
# RECEIPTS
# =============================================================================

def receipt_data_uri(file_storage):
    """Encode an uploaded receipt image as data: URI."""
    filename = file_storage.filename or ''
    ext = filename.rsplit('.', 1)[1].lower() if '.' in filename else ''
    if ext not in ALLOWED_RECEIPT_EXTENSIONS:
        raise ValidationFailure(
            f'Unsupported receipt type. Allowed: {", ".join(sorted(ALLOWED_RECEIPT_EXTENSIONS))}')
    content = file_storage.read()
    if not content:
        raise ValidationFailure('Receipt file is empty')
    encoded = base64.b64encode(content).decode('ascii')
    return f'data:{RECEIPT_MIMETYPES[ext]};base64,{encoded}'


def attach_receipt(entry_id, file_storage):
    entry = get_entry(entry_id)
    data_uri = receipt_data_uri(file_storage)
    with unit_of_work():
        entry.receipt_image_url = data_uri
    return entry


def create_entry_from_receipt(file_storage, form):
    """Mobile upload: a draft expense carrying the receipt, completed later."""
    data = {
        'entry_type': 'expense',
        'amount': form.get('amount') or 0,
        'vat_rate': form.get('vat_rate') or 0,
        'entry_date': form.get('entry_date') or date.today().isoformat(),
        'description': form.get('description') or f'Beleg-Upload {date.today().strftime("%d.%m.%Y")}',
        'receipt_number': form.get('receipt_number'),
        'status': 'draft',
        'receipt_image_url': receipt_data_uri(file_storage),
    }
    entry = save_entry(data)
    current_app.logger.info('Receipt uploaded as draft entry %s', entry.id)
    return entry


# =============================================================================
# QR CODES
# =============================================================================

def get_qr_template(template_id):
    template = db.session.get(QrTemplate, template_id)
    if template is None or not template.is_active:
        raise NotFound('QR template not found')
    return template


def save_qr_template(data):
    name = str(data.get('name') or '').strip()
    if not name:
        raise ValidationFailure('name is required')
    template_type = _choice(data.get('type'), QrTemplate.TYPES, 'type', 'receipt_upload')
    target_url = str(data.get('target_url') or '').strip() or None
    if template_type == 'url' and not target_url:
        raise ValidationFailure('target_url is required for url templates')
    validity = _number(data, 'validity_hours', 24)
    if validity <= 0:
        raise ValidationFailure('validity_hours must be positive')

    with unit_of_work():
        template = QrTemplate(
            name=name,
            type=template_type,
            description=str(data.get('description') or '').strip() or None,
            target_url=target_url,
            validity_hours=int(validity),
        )
        db.session.add(template)
    return template


def deactivate_qr_template(template_id):
    template = get_qr_template(template_id)
    with unit_of_work():
        template.is_active = False


def qr_image_data_uri(payload):
    """Render payload as PNG QR code, returned as data: URI."""
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color='black', back_color='white')
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return 'data:image/png;base64,' + base64.b64encode(buffer.getvalue()).decode('ascii')


def generate_qr_code(template_id, receipt_upload_url):
    """QR payload for a template: its target URL, or the receipt upload URL."""
    template = get_qr_template(template_id)
    target = template.target_url
    if not target and template.type == 'receipt_upload':
        target = receipt_upload_url
    if not target:
        raise ValidationFailure('QR template has no target URL')
    expires_at = datetime.utcnow() + timedelta(hours=template.validity_hours or 24)
    return template, target, expires_at, qr_image_data_uri(target)
