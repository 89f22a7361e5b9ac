"""
Shared test base: a fresh app with an in-memory SQLite database per test.
"""

import unittest

from app import create_app
from models import db


class BackofficeTestCase(unittest.TestCase):
    """Builds the app in setUp and drops every table in tearDown."""

    config = {}

    def setUp(self):
        test_config = {
            'TESTING': True,
            'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        }
        test_config.update(self.config)
        self.app = create_app(test_config)
        self.client = self.app.test_client()
        self.app_context = self.app.app_context()
        self.app_context.push()

    def tearDown(self):
        db.session.remove()
        db.drop_all()
        self.app_context.pop()

    # -- request shortcuts -------------------------------------------------

    def post_json(self, url, payload, expected=201):
        response = self.client.post(url, json=payload)
        self.assertEqual(response.status_code, expected, response.get_data(as_text=True))
        return response.get_json()

    def put_json(self, url, payload, expected=200):
        response = self.client.put(url, json=payload)
        self.assertEqual(response.status_code, expected, response.get_data(as_text=True))
        return response.get_json()

    def get_json(self, url, expected=200):
        response = self.client.get(url)
        self.assertEqual(response.status_code, expected, response.get_data(as_text=True))
        return response.get_json()

    # -- fixtures ----------------------------------------------------------

    def make_customer(self, **fields):
        payload = {'company_name': 'Acme AG', 'hourly_rate': 120}
        payload.update(fields)
        return self.post_json('/api/customers', payload)

    def make_time_entry(self, customer_id, **fields):
        payload = {
            'customer_id': customer_id,
            'description': 'Entwicklung',
            'duration_minutes': 60,
            'is_billable': True,
        }
        payload.update(fields)
        return self.post_json('/api/time-entries', payload)
