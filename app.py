import logging
import os

from dotenv import load_dotenv
from flask import Flask, jsonify

from errors import register_error_handlers
from helpers import format_currency, format_date
from models import db, AccountingCategory, QrTemplate, VatRate

# Load .env file
load_dotenv()


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    # Configuration
    os.makedirs(app.instance_path, exist_ok=True)
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get(
        'DATABASE_URL', 'sqlite:///' + os.path.join(app.instance_path, 'backoffice.db'))
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16 MB upload limit
    app.config['DEFAULT_TAX_RATE'] = float(os.environ.get('DEFAULT_TAX_RATE', '8.1'))
    app.config['DEFAULT_PAYMENT_TERMS'] = os.environ.get('DEFAULT_PAYMENT_TERMS', '30 Tage')
    # Tax rate of invoices generated from time entries, not settable per request
    app.config['TIME_ENTRY_TAX_RATE'] = float(os.environ.get('TIME_ENTRY_TAX_RATE', '8.1'))
    app.config['TOTALS_MISMATCH_POLICY'] = os.environ.get('TOTALS_MISMATCH_POLICY', 'reject')
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    if test_config is not None:
        app.config.update(test_config)

    if app.config['TOTALS_MISMATCH_POLICY'] not in ('reject', 'correct'):
        raise ValueError("TOTALS_MISMATCH_POLICY must be 'reject' or 'correct'")

    app.logger.setLevel(getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    register_error_handlers(app)

    # Create tables and seed default data
    with app.app_context():
        db.create_all()
        _seed_defaults()

    # Template filters
    app.jinja_env.filters['currency'] = format_currency
    app.jinja_env.filters['date_format'] = format_date

    # Register blueprints
    from blueprints.api import api_bp
    from blueprints.invoicing import invoicing_bp, print_bp
    from blueprints.accounting import accounting_bp
    app.register_blueprint(api_bp, url_prefix='/api')
    app.register_blueprint(invoicing_bp, url_prefix='/api')
    app.register_blueprint(accounting_bp, url_prefix='/api/accounting')
    app.register_blueprint(print_bp)

    @app.route('/')
    def index():
        return jsonify({'name': 'KMU Backoffice', 'api': '/api'})

    return app


def _seed_defaults():
    """Create default categories, VAT rates and the receipt-upload QR template."""
    if AccountingCategory.query.count() == 0:
        default_categories = [
            # Income categories
            AccountingCategory(name='Dienstleistungen', type='income', color='#10B981',
                               description='Honorare aus Beratung und Entwicklung'),
            AccountingCategory(name='Produktverkauf', type='income', color='#3B82F6'),
            AccountingCategory(name='Sonstige Erträge', type='income', color='#6366F1'),
            # Expense categories
            AccountingCategory(name='Büromaterial', type='expense', color='#F59E0B'),
            AccountingCategory(name='Software & Lizenzen', type='expense', color='#8B5CF6'),
            AccountingCategory(name='Reisekosten', type='expense', color='#EF4444',
                               description='Bahn, Auto, Übernachtung'),
            AccountingCategory(name='Miete', type='expense', color='#EC4899'),
            AccountingCategory(name='Versicherungen', type='expense', color='#14B8A6'),
            AccountingCategory(name='Sonstige Ausgaben', type='expense', color='#6B7280'),
        ]
        db.session.add_all(default_categories)
        db.session.commit()

    # Swiss MWST rates since 2024
    if VatRate.query.count() == 0:
        db.session.add_all([
            VatRate(name='Normalsatz', rate=8.1, is_default=True),
            VatRate(name='Sondersatz Beherbergung', rate=3.8),
            VatRate(name='Reduzierter Satz', rate=2.6,
                    description='Lebensmittel, Bücher, Medikamente'),
            VatRate(name='Steuerfrei', rate=0.0),
        ])
        db.session.commit()

    if QrTemplate.query.count() == 0:
        db.session.add(QrTemplate(name='Beleg-Upload', type='receipt_upload',
                                  description='Belege mit dem Smartphone hochladen',
                                  validity_hours=24))
        db.session.commit()


if __name__ == '__main__':
    create_app().run(host='0.0.0.0', port=5001, debug=False)
