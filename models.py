import sqlite3
from contextlib import contextmanager
from datetime import datetime, date

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()


@event.listens_for(Engine, 'connect')
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    """SQLite ignores foreign keys unless asked per connection."""
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute('PRAGMA foreign_keys=ON')
        cursor.close()


@contextmanager
def unit_of_work():
    """Commit everything done inside the block at once, or nothing at all."""
    try:
        yield db.session
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


class CompanySettings(db.Model):
    """Company profile used to brand invoices and quotes (single row)."""
    __tablename__ = 'company_settings'

    DEFAULT_KEY = 'default'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(50), unique=True, nullable=False, default=DEFAULT_KEY)
    company_name = db.Column(db.String(200), nullable=True)
    address = db.Column(db.Text, nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)
    city = db.Column(db.String(100), nullable=True)
    country = db.Column(db.String(100), default='Schweiz')
    phone = db.Column(db.String(100), nullable=True)
    email = db.Column(db.String(200), nullable=True)
    website = db.Column(db.String(200), nullable=True)
    logo_url = db.Column(db.Text, nullable=True)  # URL or data:image/... URI
    iban = db.Column(db.String(50), nullable=True)
    bank_account = db.Column(db.String(100), nullable=True)
    bic_swift = db.Column(db.String(20), nullable=True)
    tax_number = db.Column(db.String(100), nullable=True)  # MWST-Nr.
    default_tax_rate = db.Column(db.Float, default=8.1)
    default_payment_terms = db.Column(db.String(100), default='30 Tage')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @staticmethod
    def get_settings():
        """Return the profile row, or None if the company was never configured."""
        return CompanySettings.query.filter_by(key=CompanySettings.DEFAULT_KEY).first()

    @property
    def address_lines(self):
        lines = [l.strip() for l in (self.address or '').split('\n') if l.strip()]
        city_line = ' '.join(p for p in (self.postal_code, self.city) if p)
        if city_line:
            lines.append(city_line)
        return lines

    def __repr__(self):
        return f'<CompanySettings {self.company_name}>'


class Customer(db.Model):
    """A customer (CRM record) for time tracking, quotes and invoices."""
    __tablename__ = 'customers'

    id = db.Column(db.Integer, primary_key=True)
    company_name = db.Column(db.String(200), nullable=False)
    contact_person = db.Column(db.String(200), nullable=True)
    email = db.Column(db.String(200), unique=True, nullable=True)
    phone = db.Column(db.String(100), nullable=True)
    address = db.Column(db.Text, nullable=True)
    city = db.Column(db.String(100), nullable=True)
    postal_code = db.Column(db.String(20), nullable=True)
    country = db.Column(db.String(100), default='Schweiz')
    tax_number = db.Column(db.String(100), nullable=True)
    hourly_rate = db.Column(db.Float, nullable=False, default=0.0)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    projects = db.relationship('Project', backref='customer', lazy='dynamic')
    time_entries = db.relationship('TimeEntry', backref='customer', lazy='dynamic')

    @property
    def recipient_lines(self):
        """Address block for printed documents."""
        lines = [self.company_name]
        if self.contact_person:
            lines.append(self.contact_person)
        if self.address:
            lines.extend([l.strip() for l in self.address.strip().split('\n') if l.strip()])
        city_line = ' '.join(p for p in (self.postal_code, self.city) if p)
        if city_line:
            lines.append(city_line)
        return lines

    def __repr__(self):
        return f'<Customer {self.company_name}>'


class Project(db.Model):
    """A customer-scoped project with its own optional rate and budget."""
    __tablename__ = 'projects'

    STATUSES = ('active', 'completed', 'paused', 'cancelled')

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    hourly_rate = db.Column(db.Float, nullable=True)  # falls back to the customer rate
    budget = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='active')
    start_date = db.Column(db.Date, nullable=True)
    end_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    time_entries = db.relationship('TimeEntry', backref='project', lazy='dynamic')

    @property
    def effective_hourly_rate(self):
        if self.hourly_rate is not None:
            return self.hourly_rate
        return self.customer.hourly_rate if self.customer else 0.0

    def __repr__(self):
        return f'<Project {self.name} ({self.status})>'


class TimeEntry(db.Model):
    """
    A tracked work interval.

    ``is_billed`` is set by the invoice conversion in billing.py and cleared
    again when the invoice that billed the entry goes away.
    """
    __tablename__ = 'time_entries'

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=True)
    description = db.Column(db.String(500), nullable=False, default='')
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    duration_minutes = db.Column(db.Integer, nullable=True)
    hourly_rate = db.Column(db.Float, nullable=True)  # falls back to the customer rate
    is_billable = db.Column(db.Boolean, nullable=False, default=True)
    is_billed = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def hours(self):
        return (self.duration_minutes or 0) / 60

    def __repr__(self):
        return f'<TimeEntry {self.id} {self.duration_minutes}min>'


class Invoice(db.Model):
    """An invoice (Rechnung) for a customer."""
    __tablename__ = 'invoices'

    STATUSES = ('draft', 'sent', 'paid', 'overdue', 'cancelled')

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(50), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False)
    issue_date = db.Column(db.Date, nullable=False, default=date.today)
    due_date = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='draft')
    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    tax_rate = db.Column(db.Float, nullable=False, default=8.1)  # percent
    tax_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    payment_terms = db.Column(db.String(100), default='30 Tage')
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = db.relationship('Customer', backref=db.backref('invoices', lazy='dynamic'))
    items = db.relationship('InvoiceItem', backref='invoice', cascade='all, delete-orphan',
                            order_by='InvoiceItem.id', lazy='select')

    @property
    def is_overdue(self):
        return (self.status == 'sent' and self.due_date is not None
                and self.due_date < date.today())

    def __repr__(self):
        return f'<Invoice {self.invoice_number}>'


class InvoiceItem(db.Model):
    """A line item in an invoice, optionally derived from a time entry."""
    __tablename__ = 'invoice_items'

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey('invoices.id', ondelete='CASCADE'),
                           nullable=False)
    time_entry_id = db.Column(db.Integer, db.ForeignKey('time_entries.id', ondelete='SET NULL'),
                              nullable=True)
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=1)
    unit_price = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)  # quantity * unit_price

    time_entry = db.relationship('TimeEntry')

    def __repr__(self):
        return f'<InvoiceItem {self.id}: {self.description}>'


class Quote(db.Model):
    """An offer (Offerte) for a customer."""
    __tablename__ = 'quotes'

    STATUSES = ('draft', 'sent', 'accepted', 'rejected', 'expired')

    id = db.Column(db.Integer, primary_key=True)
    quote_number = db.Column(db.String(50), unique=True, nullable=False)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=False)
    issue_date = db.Column(db.Date, nullable=False, default=date.today)
    valid_until = db.Column(db.Date, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='draft')
    subtotal = db.Column(db.Float, nullable=False, default=0.0)
    tax_rate = db.Column(db.Float, nullable=False, default=8.1)
    tax_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    notes = db.Column(db.Text, nullable=True)
    terms_conditions = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = db.relationship('Customer', backref=db.backref('quotes', lazy='dynamic'))
    items = db.relationship('QuoteItem', backref='quote', cascade='all, delete-orphan',
                            order_by='QuoteItem.id', lazy='select')

    def __repr__(self):
        return f'<Quote {self.quote_number}>'


class QuoteItem(db.Model):
    """A line item in a quote."""
    __tablename__ = 'quote_items'

    id = db.Column(db.Integer, primary_key=True)
    quote_id = db.Column(db.Integer, db.ForeignKey('quotes.id', ondelete='CASCADE'), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    quantity = db.Column(db.Float, nullable=False, default=1)
    unit_price = db.Column(db.Float, nullable=False, default=0.0)
    total = db.Column(db.Float, nullable=False, default=0.0)

    def __repr__(self):
        return f'<QuoteItem {self.id}: {self.description}>'


class NumberSequence(db.Model):
    """Per-prefix, per-year counter behind invoice and quote numbers."""
    __tablename__ = 'number_sequences'
    __table_args__ = (db.UniqueConstraint('prefix', 'year', name='uq_number_sequence'),)

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(20), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    last_value = db.Column(db.Integer, nullable=False, default=0)

    def __repr__(self):
        return f'<NumberSequence {self.prefix}-{self.year}: {self.last_value}>'


class AccountingCategory(db.Model):
    """Income/expense category. Disabled via is_active, never deleted."""
    __tablename__ = 'accounting_categories'

    TYPES = ('income', 'expense')

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(20), nullable=False)  # 'income' or 'expense'
    color = db.Column(db.String(20), default='#6B7280')
    description = db.Column(db.Text, nullable=True)
    tax_deductible = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    entries = db.relationship('AccountingEntry', backref='category', lazy='dynamic')

    def __repr__(self):
        return f'<AccountingCategory {self.name} ({self.type})>'


class VatRate(db.Model):
    """A selectable VAT rate (MWST-Satz)."""
    __tablename__ = 'vat_rates'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    rate = db.Column(db.Float, nullable=False)
    description = db.Column(db.Text, nullable=True)
    is_default = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def __repr__(self):
        return f'<VatRate {self.name} {self.rate}%>'


class AccountingEntry(db.Model):
    """
    A categorized income or expense booking with VAT.

    Only ``confirmed`` entries count toward the yearly summary.
    """
    __tablename__ = 'accounting_entries'

    TYPES = ('income', 'expense')
    STATUSES = ('draft', 'confirmed', 'reconciled')

    id = db.Column(db.Integer, primary_key=True)
    entry_type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.Float, nullable=False)  # net, before VAT
    vat_rate = db.Column(db.Float, nullable=False, default=0.0)
    vat_amount = db.Column(db.Float, nullable=False, default=0.0)
    total_amount = db.Column(db.Float, nullable=False, default=0.0)
    entry_date = db.Column(db.Date, nullable=False, default=date.today)
    description = db.Column(db.String(500), nullable=False)
    receipt_number = db.Column(db.String(100), nullable=True)
    category_id = db.Column(db.Integer, db.ForeignKey('accounting_categories.id'), nullable=True)
    customer_id = db.Column(db.Integer, db.ForeignKey('customers.id'), nullable=True)
    project_id = db.Column(db.Integer, db.ForeignKey('projects.id'), nullable=True)
    receipt_image_url = db.Column(db.Text, nullable=True)  # URL or inline data URI
    notes = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='draft')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    customer = db.relationship('Customer', backref=db.backref('accounting_entries', lazy='dynamic'))
    project = db.relationship('Project', backref=db.backref('accounting_entries', lazy='dynamic'))

    def __repr__(self):
        return f'<AccountingEntry {self.entry_type} {self.total_amount} {self.entry_date}>'


class QrTemplate(db.Model):
    """A reusable QR code target (e.g. mobile receipt upload)."""
    __tablename__ = 'qr_templates'

    TYPES = ('receipt_upload', 'url')

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    type = db.Column(db.String(30), nullable=False, default='receipt_upload')
    description = db.Column(db.Text, nullable=True)
    target_url = db.Column(db.String(500), nullable=True)
    validity_hours = db.Column(db.Integer, nullable=False, default=24)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f'<QrTemplate {self.name} ({self.type})>'
