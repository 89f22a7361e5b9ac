"""
REST API blueprint for the back-office master data.

Customers, projects, time entries and the company profile. Invoices and
quotes live in ``invoicing.py``, the ledger in ``accounting.py``.

All responses are JSON. Monetary values are in CHF (float).
Dates are ISO 8601 (YYYY-MM-DD), timestamps YYYY-MM-DDTHH:MM:SS.
Errors are answered as {"error": "<message>"}.
"""

from flask import Blueprint, current_app, jsonify, request

from billing import optional_int, unbilled_time_entries
from errors import NotFound, ReferenceConflict, ValidationFailure, storage_errors
from helpers import (
    minutes_between, parse_datetime, parse_optional_amount,
    parse_optional_date,
)
from models import (
    db, unit_of_work, AccountingEntry, CompanySettings, Customer, Project,
    TimeEntry,
)

api_bp = Blueprint('api', __name__)


# ---------------------------------------------------------------------------
# Request / response helpers
# ---------------------------------------------------------------------------

def json_payload():
    """Request body as dict; anything else is a ValidationFailure."""
    data = request.get_json(force=True, silent=True)
    if not isinstance(data, dict):
        raise ValidationFailure('Request body must be a JSON object')
    return data


def iso(value):
    return value.isoformat() if value else None


def text_field(data, field):
    value = data.get(field)
    if value is None:
        return None
    return str(value).strip() or None


def amount_field(data, field):
    try:
        return parse_optional_amount(data.get(field))
    except (ValueError, TypeError):
        raise ValidationFailure(f'{field} is not a number')


def flag_field(value, default):
    if value is None or value == '':
        return default
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _customer_to_dict(c):
    return {
        'id': c.id,
        'company_name': c.company_name,
        'contact_person': c.contact_person,
        'email': c.email,
        'phone': c.phone,
        'address': c.address,
        'city': c.city,
        'postal_code': c.postal_code,
        'country': c.country,
        'tax_number': c.tax_number,
        'hourly_rate': c.hourly_rate,
        'notes': c.notes,
        'created_at': iso(c.created_at),
        'updated_at': iso(c.updated_at),
    }


def _project_to_dict(p):
    return {
        'id': p.id,
        'customer_id': p.customer_id,
        'company_name': p.customer.company_name if p.customer else None,
        'name': p.name,
        'description': p.description,
        'hourly_rate': p.hourly_rate,
        'effective_hourly_rate': p.effective_hourly_rate,
        'budget': p.budget,
        'status': p.status,
        'start_date': iso(p.start_date),
        'end_date': iso(p.end_date),
        'created_at': iso(p.created_at),
        'updated_at': iso(p.updated_at),
    }


def _time_entry_to_dict(t):
    return {
        'id': t.id,
        'customer_id': t.customer_id,
        'company_name': t.customer.company_name if t.customer else None,
        'project_id': t.project_id,
        'project_name': t.project.name if t.project else None,
        'description': t.description,
        'start_time': iso(t.start_time),
        'end_time': iso(t.end_time),
        'duration_minutes': t.duration_minutes,
        'hourly_rate': t.hourly_rate,
        'is_billable': t.is_billable,
        'is_billed': t.is_billed,
        'notes': t.notes,
        'created_at': iso(t.created_at),
        'updated_at': iso(t.updated_at),
    }


def _settings_to_dict(s):
    return {
        'id': s.id,
        'company_name': s.company_name,
        'address': s.address,
        'postal_code': s.postal_code,
        'city': s.city,
        'country': s.country,
        'phone': s.phone,
        'email': s.email,
        'website': s.website,
        'logo_url': s.logo_url,
        'iban': s.iban,
        'bank_account': s.bank_account,
        'bic_swift': s.bic_swift,
        'tax_number': s.tax_number,
        'default_tax_rate': s.default_tax_rate,
        'default_payment_terms': s.default_payment_terms,
        'created_at': iso(s.created_at),
        'updated_at': iso(s.updated_at),
    }


def _get_or_404(model_class, obj_id, label):
    obj = db.session.get(model_class, obj_id)
    if obj is None:
        raise NotFound(f'{label} not found')
    return obj


# ---------------------------------------------------------------------------
# Customers
# ---------------------------------------------------------------------------

CUSTOMER_TEXT_FIELDS = ('contact_person', 'phone', 'address', 'city', 'postal_code',
                        'country', 'tax_number', 'notes')


def _apply_customer(c, data, is_new):
    if 'company_name' in data or is_new:
        company_name = text_field(data, 'company_name')
        if not company_name:
            raise ValidationFailure('company_name is required')
        c.company_name = company_name

    if 'email' in data:
        email = text_field(data, 'email')
        if email:
            clash = Customer.query.filter(Customer.email == email)
            if c.id is not None:
                clash = clash.filter(Customer.id != c.id)
            if clash.first() is not None:
                raise ValidationFailure(f'A customer with email {email} already exists')
        c.email = email

    for field in CUSTOMER_TEXT_FIELDS:
        if field in data:
            setattr(c, field, text_field(data, field))
    if is_new and not c.country:
        c.country = 'Schweiz'

    if 'hourly_rate' in data:
        rate = amount_field(data, 'hourly_rate') or 0.0
        if rate < 0:
            raise ValidationFailure('hourly_rate must not be negative')
        c.hourly_rate = rate


@api_bp.route('/customers', methods=['GET'])
@storage_errors('Failed to fetch customers')
def list_customers():
    """List all customers, newest first."""
    customers = Customer.query.order_by(Customer.created_at.desc(), Customer.id.desc()).all()
    return jsonify({'customers': [_customer_to_dict(c) for c in customers]})


@api_bp.route('/customers', methods=['POST'])
@storage_errors('Failed to create customer')
def create_customer():
    """
    Create a customer.
    Body: { company_name, contact_person?, email?, phone?, address?, city?,
            postal_code?, country?, tax_number?, hourly_rate?, notes? }
    """
    data = json_payload()
    c = Customer()
    _apply_customer(c, data, is_new=True)
    with unit_of_work() as session:
        session.add(c)
    current_app.logger.info('Customer %s created: %s', c.id, c.company_name)
    return jsonify(_customer_to_dict(c)), 201


@api_bp.route('/customers/<int:customer_id>', methods=['GET'])
@storage_errors('Failed to fetch customer')
def get_customer(customer_id):
    return jsonify({'customer': _customer_to_dict(_get_or_404(Customer, customer_id, 'Customer'))})


@api_bp.route('/customers/<int:customer_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update customer')
def update_customer(customer_id):
    c = _get_or_404(Customer, customer_id, 'Customer')
    data = json_payload()
    with unit_of_work():
        _apply_customer(c, data, is_new=False)
    return jsonify(_customer_to_dict(c))


@api_bp.route('/customers/<int:customer_id>', methods=['DELETE'])
@storage_errors('Failed to delete customer')
def delete_customer(customer_id):
    """Delete a customer. Fails while anything still references it."""
    c = _get_or_404(Customer, customer_id, 'Customer')

    references = {
        'project(s)': c.projects.count(),
        'time entry(ies)': c.time_entries.count(),
        'invoice(s)': c.invoices.count(),
        'quote(s)': c.quotes.count(),
        'accounting entry(ies)': c.accounting_entries.count(),
    }
    linked = [f'{count} {label}' for label, count in references.items() if count]
    if linked:
        raise ReferenceConflict(
            f'Cannot delete customer with linked {", ".join(linked)}. Remove them first.')

    with unit_of_work() as session:
        session.delete(c)
    current_app.logger.info('Customer %s deleted', customer_id)
    return jsonify({'success': True})


@api_bp.route('/customers/<int:customer_id>/unbilled-time-entries', methods=['GET'])
@storage_errors('Failed to fetch unbilled time entries')
def list_unbilled_time_entries(customer_id):
    """Billable, not yet billed entries of a customer. Empty list when none."""
    entries = unbilled_time_entries(customer_id)
    return jsonify({'timeEntries': [_time_entry_to_dict(t) for t in entries]})


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

def _apply_project(p, data, is_new):
    if 'name' in data or is_new:
        name = text_field(data, 'name')
        if not name:
            raise ValidationFailure('name is required')
        p.name = name

    if 'customer_id' in data:
        customer_id = optional_int(data.get('customer_id'), 'customer_id')
        if customer_id is not None and db.session.get(Customer, customer_id) is None:
            raise ValidationFailure(f'Customer {customer_id} does not exist')
        p.customer_id = customer_id

    if 'description' in data:
        p.description = text_field(data, 'description')
    for field in ('hourly_rate', 'budget'):
        if field in data:
            value = amount_field(data, field)
            if value is not None and value < 0:
                raise ValidationFailure(f'{field} must not be negative')
            setattr(p, field, value)

    if 'status' in data or is_new:
        status = text_field(data, 'status') or 'active'
        if status not in Project.STATUSES:
            raise ValidationFailure(f'Invalid status. Valid values: {", ".join(Project.STATUSES)}')
        p.status = status

    for field in ('start_date', 'end_date'):
        if field in data:
            try:
                setattr(p, field, parse_optional_date(data.get(field)))
            except (ValueError, TypeError):
                raise ValidationFailure(f'Invalid {field}. Use YYYY-MM-DD.')


@api_bp.route('/projects', methods=['GET'])
@storage_errors('Failed to fetch projects')
def list_projects():
    """List projects with their customer name, newest first."""
    query = Project.query
    customer_id = request.args.get('customer_id', type=int)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    projects = query.order_by(Project.created_at.desc(), Project.id.desc()).all()
    return jsonify({'projects': [_project_to_dict(p) for p in projects]})


@api_bp.route('/projects', methods=['POST'])
@storage_errors('Failed to create project')
def create_project():
    """
    Create a project.
    Body: { name, customer_id?, description?, hourly_rate?, budget?, status?,
            start_date?, end_date? }
    """
    data = json_payload()
    p = Project()
    _apply_project(p, data, is_new=True)
    with unit_of_work() as session:
        session.add(p)
    return jsonify(_project_to_dict(p)), 201


@api_bp.route('/projects/<int:project_id>', methods=['GET'])
@storage_errors('Failed to fetch project')
def get_project(project_id):
    return jsonify({'project': _project_to_dict(_get_or_404(Project, project_id, 'Project'))})


@api_bp.route('/projects/<int:project_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update project')
def update_project(project_id):
    p = _get_or_404(Project, project_id, 'Project')
    data = json_payload()
    with unit_of_work():
        _apply_project(p, data, is_new=False)
    return jsonify(_project_to_dict(p))


@api_bp.route('/projects/<int:project_id>', methods=['DELETE'])
@storage_errors('Failed to delete project')
def delete_project(project_id):
    p = _get_or_404(Project, project_id, 'Project')
    entry_count = p.time_entries.count()
    if entry_count:
        raise ReferenceConflict(
            f'Cannot delete project with {entry_count} linked time entry(ies). Remove them first.')
    with unit_of_work() as session:
        AccountingEntry.query.filter_by(project_id=p.id).update({'project_id': None})
        session.delete(p)
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# Time entries
# ---------------------------------------------------------------------------

def _time_entry_values(data, entry=None):
    """Validated column values for a create (entry=None) or partial update."""
    values = {}

    for field, model_class in (('customer_id', Customer), ('project_id', Project)):
        if field in data:
            ref_id = optional_int(data.get(field), field)
            if ref_id is not None and db.session.get(model_class, ref_id) is None:
                raise ValidationFailure(f'{model_class.__name__} {ref_id} does not exist')
            values[field] = ref_id

    # A project implies its customer
    project_id = values.get('project_id', entry.project_id if entry else None)
    customer_id = values.get('customer_id', entry.customer_id if entry else None)
    if project_id is not None and customer_id is None:
        project = db.session.get(Project, project_id)
        if project.customer_id is not None:
            values['customer_id'] = project.customer_id

    if 'description' in data or entry is None:
        values['description'] = str(data.get('description') or '').strip()
    if 'notes' in data:
        values['notes'] = text_field(data, 'notes')

    for field in ('start_time', 'end_time'):
        if field in data:
            try:
                values[field] = parse_datetime(data.get(field))
            except (ValueError, TypeError):
                raise ValidationFailure(f'Invalid {field}. Use ISO 8601.')

    start = values.get('start_time', entry.start_time if entry else None)
    end = values.get('end_time', entry.end_time if entry else None)
    if ('start_time' in values or 'end_time' in values) and start and end:
        if end < start:
            raise ValidationFailure('end_time must not be before start_time')
        values['duration_minutes'] = minutes_between(start, end)
    elif 'duration_minutes' in data:
        duration = optional_int(data.get('duration_minutes'), 'duration_minutes')
        if duration is not None and duration < 0:
            raise ValidationFailure('duration_minutes must not be negative')
        values['duration_minutes'] = duration

    if 'hourly_rate' in data:
        rate = amount_field(data, 'hourly_rate')
        if rate is not None and rate < 0:
            raise ValidationFailure('hourly_rate must not be negative')
        values['hourly_rate'] = rate

    if 'is_billable' in data or entry is None:
        values['is_billable'] = flag_field(data.get('is_billable'), True)

    return values


BILLING_FIELDS = ('customer_id', 'duration_minutes', 'hourly_rate', 'is_billable')


def _check_billed_entry(entry, values):
    changed = [f for f in BILLING_FIELDS if f in values and values[f] != getattr(entry, f)]
    if changed:
        raise ValidationFailure(
            f'Time entry {entry.id} is already billed; cannot change {", ".join(changed)}')


@api_bp.route('/time-entries', methods=['GET'])
@storage_errors('Failed to fetch time entries')
def list_time_entries():
    """
    List time entries with customer and project names, newest first.
    Query params: customer_id, project_id, billed (0/1)
    """
    query = TimeEntry.query
    customer_id = request.args.get('customer_id', type=int)
    if customer_id:
        query = query.filter_by(customer_id=customer_id)
    project_id = request.args.get('project_id', type=int)
    if project_id:
        query = query.filter_by(project_id=project_id)
    billed = request.args.get('billed')
    if billed not in (None, ''):
        query = query.filter_by(is_billed=flag_field(billed, False))

    entries = query.order_by(TimeEntry.start_time.desc(), TimeEntry.id.desc()).all()
    return jsonify({'timeEntries': [_time_entry_to_dict(t) for t in entries]})


@api_bp.route('/time-entries', methods=['POST'])
@storage_errors('Failed to create time entry')
def create_time_entry():
    """
    Create a time entry. duration_minutes is derived when start_time and
    end_time are both given.
    Body: { customer_id?, project_id?, description?, start_time?, end_time?,
            duration_minutes?, hourly_rate?, is_billable?, notes? }
    """
    values = _time_entry_values(json_payload())
    entry = TimeEntry(**values)
    with unit_of_work() as session:
        session.add(entry)
    return jsonify(_time_entry_to_dict(entry)), 201


@api_bp.route('/time-entries/<int:entry_id>', methods=['GET'])
@storage_errors('Failed to fetch time entry')
def get_time_entry(entry_id):
    return jsonify({'timeEntry': _time_entry_to_dict(_get_or_404(TimeEntry, entry_id, 'Time entry'))})


@api_bp.route('/time-entries/<int:entry_id>', methods=['PUT', 'PATCH'])
@storage_errors('Failed to update time entry')
def update_time_entry(entry_id):
    entry = _get_or_404(TimeEntry, entry_id, 'Time entry')
    values = _time_entry_values(json_payload(), entry)
    if entry.is_billed:
        _check_billed_entry(entry, values)
    with unit_of_work():
        for field, value in values.items():
            setattr(entry, field, value)
    return jsonify(_time_entry_to_dict(entry))


@api_bp.route('/time-entries/<int:entry_id>', methods=['DELETE'])
@storage_errors('Failed to delete time entry')
def delete_time_entry(entry_id):
    """Delete a time entry. Invoice items that billed it keep their text and amount."""
    entry = _get_or_404(TimeEntry, entry_id, 'Time entry')
    with unit_of_work() as session:
        session.delete(entry)
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# Company settings
# ---------------------------------------------------------------------------

SETTINGS_TEXT_FIELDS = (
    'company_name', 'address', 'postal_code', 'city', 'country', 'phone', 'email',
    'website', 'logo_url', 'iban', 'bank_account', 'bic_swift', 'tax_number',
    'default_payment_terms',
)


@api_bp.route('/company-settings', methods=['GET'])
@storage_errors('Failed to fetch company settings')
def get_company_settings():
    """The company profile, or null when it was never saved."""
    s = CompanySettings.get_settings()
    return jsonify({'settings': _settings_to_dict(s) if s else None})


@api_bp.route('/company-settings', methods=['POST'])
@storage_errors('Failed to save company settings')
def save_company_settings():
    """
    Create or update the single company profile.
    Body: { company_name?, address?, ..., default_tax_rate?, default_payment_terms? }
    """
    data = json_payload()
    if 'default_tax_rate' in data:
        rate = amount_field(data, 'default_tax_rate')
        if rate is not None and rate < 0:
            raise ValidationFailure('default_tax_rate must not be negative')

    with unit_of_work() as session:
        s = CompanySettings.get_settings()
        if s is None:
            s = CompanySettings(key=CompanySettings.DEFAULT_KEY)
            session.add(s)
        for field in SETTINGS_TEXT_FIELDS:
            if field in data:
                setattr(s, field, text_field(data, field))
        if 'default_tax_rate' in data:
            s.default_tax_rate = amount_field(data, 'default_tax_rate')

    current_app.logger.info('Company settings saved')
    return jsonify({'settings': _settings_to_dict(s)})
