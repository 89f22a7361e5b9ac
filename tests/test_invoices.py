import re
import unittest
from datetime import date

from billing import clean_items, compute_totals, next_document_number, INVOICE_PREFIX
from errors import ValidationFailure
from models import db, Invoice, InvoiceItem, NumberSequence, TimeEntry
from support import BackofficeTestCase


class TotalsTests(unittest.TestCase):

    def test_compute_totals(self):
        items = [{'quantity': 2, 'unit_price': 100}, {'quantity': 1, 'unit_price': 50.5}]
        self.assertEqual(compute_totals(items, 8.1), (250.5, 20.29, 270.79))

    def test_rounding_is_half_up(self):
        # 0.125 would be 0.12 with banker's rounding
        self.assertEqual(compute_totals([{'quantity': 1, 'unit_price': 0.125}], 0), (0.13, 0.0, 0.13))

    def test_empty_items_give_zero(self):
        self.assertEqual(compute_totals([], 8.1), (0.0, 0.0, 0.0))

    def test_clean_items_drops_incomplete_lines(self):
        items = clean_items([
            {'description': 'Beratung', 'quantity': 2, 'unit_price': 100},
            {'description': '', 'quantity': 1, 'unit_price': 10},
            {'description': 'Gratis', 'quantity': 0, 'unit_price': 10},
            {'description': 'Storno', 'quantity': -1, 'unit_price': 10},
        ])
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]['total'], 200.0)

    def test_clean_items_accepts_swiss_number_strings(self):
        items = clean_items([{'description': 'Lizenz', 'quantity': '1', 'unit_price': "1'250,50"}])
        self.assertEqual(items[0]['unit_price'], 1250.5)

    def test_clean_items_rejects_negative_price(self):
        with self.assertRaises(ValidationFailure):
            clean_items([{'description': 'Rabatt', 'quantity': 1, 'unit_price': -10}])

    def test_clean_items_rejects_garbage(self):
        with self.assertRaises(ValidationFailure):
            clean_items([{'description': 'X', 'quantity': 'viel', 'unit_price': 1}])
        with self.assertRaises(ValidationFailure):
            clean_items('not a list')


class InvoiceApiTests(BackofficeTestCase):

    def setUp(self):
        super().setUp()
        self.customer = self.make_customer()

    def _invoice(self, **fields):
        payload = {
            'customer_id': self.customer['id'],
            'items': [{'description': 'Consulting', 'quantity': 3, 'unit_price': 150}],
            'tax_rate': 8.1,
        }
        payload.update(fields)
        return self.post_json('/api/invoices', payload)

    def test_manual_invoice_totals(self):
        inv = self._invoice()
        self.assertEqual(inv['subtotal'], 450.0)
        self.assertEqual(inv['tax_amount'], 36.45)
        self.assertEqual(inv['total_amount'], 486.45)
        self.assertEqual(inv['status'], 'draft')
        self.assertEqual(inv['payment_terms'], '30 Tage')
        self.assertEqual(inv['company_name'], 'Acme AG')

    def test_total_identity_holds(self):
        inv = self._invoice(items=[
            {'description': 'A', 'quantity': 1.5, 'unit_price': 33.33},
            {'description': 'B', 'quantity': 7, 'unit_price': 19.99},
        ], tax_rate=7.7)
        stored = db.session.get(Invoice, inv['id'])
        item_sum = round(sum(i.quantity * i.unit_price for i in stored.items), 2)
        self.assertAlmostEqual(stored.subtotal, item_sum, places=2)
        self.assertAlmostEqual(stored.total_amount, stored.subtotal + stored.tax_amount, places=2)

    def test_zero_quantity_item_is_not_persisted(self):
        inv = self._invoice(items=[{'description': 'Nichts', 'quantity': 0, 'unit_price': 100}])
        self.assertEqual((inv['subtotal'], inv['tax_amount'], inv['total_amount']), (0.0, 0.0, 0.0))
        self.assertEqual(InvoiceItem.query.filter_by(invoice_id=inv['id']).count(), 0)

    def test_invoice_numbers_are_sequential(self):
        year = date.today().year
        numbers = [self._invoice()['invoice_number'] for _ in range(3)]
        self.assertEqual(numbers, [f'RE-{year}-001', f'RE-{year}-002', f'RE-{year}-003'])
        for number in numbers:
            self.assertRegex(number, r'^RE-\d{4}-\d{3}$')

    def test_numbering_seeds_from_existing_invoices(self):
        year = date.today().year
        db.session.add(Invoice(invoice_number=f'RE-{year}-001', customer_id=self.customer['id']))
        db.session.add(Invoice(invoice_number=f'RE-{year}-002', customer_id=self.customer['id']))
        db.session.commit()
        self.assertEqual(self._invoice()['invoice_number'], f'RE-{year}-003')
        seq = NumberSequence.query.filter_by(prefix='RE', year=year).one()
        self.assertEqual(seq.last_value, 3)

    def test_generated_number_skips_manually_claimed_one(self):
        year = date.today().year
        self.assertEqual(self._invoice()['invoice_number'], f'RE-{year}-001')
        self._invoice(invoice_number=f'RE-{year}-002')
        self.assertEqual(self._invoice()['invoice_number'], f'RE-{year}-003')

    def test_duplicate_manual_number_is_rejected(self):
        self._invoice(invoice_number='RE-2020-007')
        body = self.post_json('/api/invoices', {
            'customer_id': self.customer['id'], 'invoice_number': 'RE-2020-007', 'items': [],
        }, expected=400)
        self.assertIn('already in use', body['error'])

    def test_next_document_number_for_other_year(self):
        number = next_document_number(INVOICE_PREFIX, Invoice, 'invoice_number', year=2031)
        self.assertEqual(number, 'RE-2031-001')

    def test_unknown_customer_is_rejected(self):
        body = self.post_json('/api/invoices', {'customer_id': 999, 'items': []}, expected=400)
        self.assertIn('999', body['error'])

    def test_missing_customer_is_rejected(self):
        self.post_json('/api/invoices', {'items': []}, expected=400)

    def test_mismatching_client_totals_are_rejected(self):
        body = self.post_json('/api/invoices', {
            'customer_id': self.customer['id'],
            'items': [{'description': 'Consulting', 'quantity': 3, 'unit_price': 150}],
            'tax_rate': 8.1,
            'total_amount': 500,
        }, expected=400)
        self.assertIn('total_amount', body['error'])

    def test_matching_client_totals_are_accepted(self):
        inv = self._invoice(subtotal=450, tax_amount=36.45, total_amount=486.45)
        self.assertEqual(inv['total_amount'], 486.45)

    def test_non_object_body_is_rejected(self):
        response = self.client.post('/api/invoices', data='[1, 2]', content_type='application/json')
        self.assertEqual(response.status_code, 400)
        self.assertIn('error', response.get_json())

    def test_get_invoice_with_items(self):
        inv = self._invoice()
        body = self.get_json(f'/api/invoices/{inv["id"]}')
        self.assertEqual(body['invoice']['invoice_number'], inv['invoice_number'])
        self.assertEqual(len(body['items']), 1)
        self.assertEqual(body['items'][0]['description'], 'Consulting')
        self.assertIsNone(body['items'][0]['time_entry_id'])

    def test_get_missing_invoice(self):
        body = self.get_json('/api/invoices/4711', expected=404)
        self.assertEqual(body['error'], 'Invoice not found')

    def test_list_invoices_with_filters(self):
        self._invoice()
        self._invoice(status='sent')
        other = self.make_customer(company_name='Beta GmbH', email='info@beta.ch')
        self.post_json('/api/invoices', {'customer_id': other['id'], 'items': []})

        self.assertEqual(len(self.get_json('/api/invoices')['invoices']), 3)
        sent = self.get_json('/api/invoices?status=sent')['invoices']
        self.assertEqual(len(sent), 1)
        beta = self.get_json(f'/api/invoices?customer_id={other["id"]}')['invoices']
        self.assertEqual([i['company_name'] for i in beta], ['Beta GmbH'])
        self.assertEqual(self.get_json('/api/invoices?year=1999')['invoices'], [])

    def test_non_finite_item_numbers_are_rejected(self):
        for item in ({'description': 'Workshop', 'quantity': 'nan', 'unit_price': 100},
                     {'description': 'Workshop', 'quantity': 1, 'unit_price': 'inf'},
                     {'description': 'Workshop', 'quantity': '-Infinity', 'unit_price': 100}):
            body = self.post_json('/api/invoices', {
                'customer_id': self.customer['id'], 'items': [item],
            }, expected=400)
            self.assertIn('items[0]', body['error'])
        self.post_json('/api/invoices', {
            'customer_id': self.customer['id'], 'items': [], 'tax_rate': 'inf',
        }, expected=400)
        self.assertEqual(Invoice.query.count(), 0)

    def test_invalid_status_is_rejected(self):
        self.post_json('/api/invoices', {
            'customer_id': self.customer['id'], 'items': [], 'status': 'bezahlt',
        }, expected=400)

    def test_update_replaces_items_and_recomputes(self):
        inv = self._invoice()
        updated = self.put_json(f'/api/invoices/{inv["id"]}', {
            'items': [
                {'description': 'Workshop', 'quantity': 1, 'unit_price': 1000},
                {'description': 'Spesen', 'quantity': 1, 'unit_price': 80},
            ],
        })
        self.assertEqual(updated['subtotal'], 1080.0)
        self.assertEqual(updated['tax_amount'], 87.48)
        self.assertEqual(updated['total_amount'], 1167.48)
        descriptions = [i.description for i in InvoiceItem.query.filter_by(invoice_id=inv['id'])]
        self.assertEqual(sorted(descriptions), ['Spesen', 'Workshop'])

    def test_update_tax_rate_recomputes_existing_items(self):
        inv = self._invoice()
        updated = self.put_json(f'/api/invoices/{inv["id"]}', {'tax_rate': 0})
        self.assertEqual(updated['tax_amount'], 0.0)
        self.assertEqual(updated['total_amount'], 450.0)

    def test_partial_update_keeps_other_fields(self):
        inv = self._invoice(notes='Danke')
        updated = self.put_json(f'/api/invoices/{inv["id"]}', {'status': 'sent'})
        self.assertEqual(updated['status'], 'sent')
        self.assertEqual(updated['notes'], 'Danke')
        self.assertEqual(updated['total_amount'], 486.45)

    def test_update_missing_invoice(self):
        self.put_json('/api/invoices/4711', {'status': 'sent'}, expected=404)

    def test_delete_cascades_items(self):
        inv = self._invoice()
        item_ids = [i.id for i in InvoiceItem.query.filter_by(invoice_id=inv['id'])]
        self.assertTrue(item_ids)

        response = self.client.delete(f'/api/invoices/{inv["id"]}')
        self.assertEqual(response.get_json(), {'success': True})
        self.assertEqual(InvoiceItem.query.filter(InvoiceItem.id.in_(item_ids)).count(), 0)
        self.get_json(f'/api/invoices/{inv["id"]}', expected=404)

    def test_company_defaults_apply(self):
        self.post_json('/api/company-settings', {
            'company_name': 'Muster GmbH', 'default_tax_rate': 7.7, 'default_payment_terms': '10 Tage',
        }, expected=200)
        inv = self.post_json('/api/invoices', {
            'customer_id': self.customer['id'],
            'items': [{'description': 'Consulting', 'quantity': 1, 'unit_price': 1000}],
        })
        self.assertEqual(inv['tax_rate'], 7.7)
        self.assertEqual(inv['tax_amount'], 77.0)
        self.assertEqual(inv['payment_terms'], '10 Tage')


class CorrectingTotalsTests(BackofficeTestCase):
    config = {'TOTALS_MISMATCH_POLICY': 'correct'}

    def test_mismatching_totals_are_replaced(self):
        customer = self.make_customer()
        inv = self.post_json('/api/invoices', {
            'customer_id': customer['id'],
            'items': [{'description': 'Consulting', 'quantity': 3, 'unit_price': 150}],
            'tax_rate': 8.1,
            'subtotal': 400,
            'total_amount': 999,
        })
        self.assertEqual(inv['subtotal'], 450.0)
        self.assertEqual(inv['total_amount'], 486.45)


class InvoiceFromTimeEntriesTests(BackofficeTestCase):

    def setUp(self):
        super().setUp()
        self.customer = self.make_customer(company_name='Acme AG', hourly_rate=120)

    def _convert(self, ids, expected=200, **fields):
        payload = {'customer_id': self.customer['id'], 'time_entry_ids': ids}
        payload.update(fields)
        return self.post_json('/api/invoices/from-time-entries', payload, expected=expected)

    def _billed(self, entry_id):
        entry = db.session.get(TimeEntry, entry_id)
        db.session.refresh(entry)
        return entry.is_billed

    def test_two_entries_become_invoice(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=90)
        b = self.make_time_entry(self.customer['id'], duration_minutes=60)

        result = self._convert([a['id'], b['id']])
        self.assertEqual(result['subtotal'], 300.0)
        self.assertEqual(result['tax_amount'], 24.3)
        self.assertEqual(result['total_amount'], 324.3)
        self.assertEqual(result['items_count'], 2)
        self.assertRegex(result['invoice_number'], r'^RE-\d{4}-\d{3}$')
        self.assertTrue(self._billed(a['id']))
        self.assertTrue(self._billed(b['id']))

        body = self.get_json(f'/api/invoices/{result["id"]}')
        self.assertEqual(body['invoice']['status'], 'draft')
        self.assertEqual(body['invoice']['tax_rate'], 8.1)
        self.assertEqual({i['time_entry_id'] for i in body['items']}, {a['id'], b['id']})
        self.assertEqual({i['duration_minutes'] for i in body['items']}, {90, 60})
        self.assertEqual({i['time_description'] for i in body['items']}, {'Entwicklung'})

    def test_entry_rate_wins_over_customer_rate(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=30, hourly_rate=200)
        b = self.make_time_entry(self.customer['id'], duration_minutes=30)
        self._convert([a['id'], b['id']])
        prices = sorted(i.unit_price for i in InvoiceItem.query.all())
        self.assertEqual(prices, [120.0, 200.0])

    def test_customer_rate_read_at_conversion_time(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        self.put_json(f'/api/customers/{self.customer["id"]}', {'hourly_rate': 150})
        result = self._convert([a['id']])
        self.assertEqual(result['subtotal'], 150.0)

    def test_tax_rate_is_not_taken_from_request(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        result = self._convert([a['id']], tax_rate=0)
        self.assertEqual(result['tax_amount'], 9.72)

    def test_all_requested_ids_are_marked_billed(self):
        billable = self.make_time_entry(self.customer['id'], duration_minutes=60)
        internal = self.make_time_entry(self.customer['id'], duration_minutes=60, is_billable=False)

        result = self._convert([billable['id'], internal['id']])
        self.assertEqual(result['items_count'], 1)
        self.assertTrue(self._billed(billable['id']))
        self.assertTrue(self._billed(internal['id']))

    def test_already_billed_entry_is_skipped(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        self._convert([a['id']])
        b = self.make_time_entry(self.customer['id'], duration_minutes=30)

        result = self._convert([a['id'], b['id']])
        self.assertEqual(result['items_count'], 1)
        self.assertEqual(result['subtotal'], 60.0)
        self.assertTrue(self._billed(a['id']))

    def test_only_billed_entry_fails(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        self._convert([a['id']])
        invoices_before = Invoice.query.count()

        body = self._convert([a['id']], expected=400)
        self.assertEqual(body['error'], 'No billable time entries found')
        self.assertEqual(Invoice.query.count(), invoices_before)

    def test_entries_of_other_customers_are_ignored(self):
        other = self.make_customer(company_name='Beta GmbH', email='info@beta.ch')
        foreign = self.make_time_entry(other['id'], duration_minutes=60)
        body = self._convert([foreign['id']], expected=400)
        self.assertEqual(body['error'], 'No billable time entries found')

    def test_missing_ids_are_rejected(self):
        body = self._convert([], expected=400)
        self.assertEqual(body['error'], 'Customer ID and time entry IDs are required')
        body = self.post_json('/api/invoices/from-time-entries', {'time_entry_ids': [1]}, expected=400)
        self.assertEqual(body['error'], 'Customer ID and time entry IDs are required')

    def test_delete_invoice_unbills_entries(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        result = self._convert([a['id']])
        self.client.delete(f'/api/invoices/{result["id"]}')
        self.assertFalse(self._billed(a['id']))
        unbilled = self.get_json(f'/api/customers/{self.customer["id"]}/unbilled-time-entries')
        self.assertEqual([t['id'] for t in unbilled['timeEntries']], [a['id']])

    def test_replacing_items_unbills_dropped_entries(self):
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        b = self.make_time_entry(self.customer['id'], duration_minutes=60)
        result = self._convert([a['id'], b['id']])

        self.put_json(f'/api/invoices/{result["id"]}', {
            'items': [{'description': 'Entwicklung', 'quantity': 1, 'unit_price': 120,
                       'time_entry_id': a['id']}],
        })
        self.assertTrue(self._billed(a['id']))
        self.assertFalse(self._billed(b['id']))

    def test_numbering_shared_with_manual_invoices(self):
        year = date.today().year
        self.post_json('/api/invoices', {'customer_id': self.customer['id'], 'items': []})
        a = self.make_time_entry(self.customer['id'], duration_minutes=60)
        result = self._convert([a['id']])
        self.assertEqual(result['invoice_number'], f'RE-{year}-002')


class QuoteApiTests(BackofficeTestCase):

    def setUp(self):
        super().setUp()
        self.customer = self.make_customer()

    def _quote(self, **fields):
        payload = {
            'customer_id': self.customer['id'],
            'items': [{'description': 'Website', 'quantity': 1, 'unit_price': 4800}],
            'tax_rate': 8.1,
            'valid_until': '2026-12-31',
            'terms_conditions': 'Gültig 30 Tage',
        }
        payload.update(fields)
        return self.post_json('/api/quotes', payload)

    def test_create_quote(self):
        q = self._quote()
        self.assertTrue(re.match(r'^OFF-\d{4}-001$', q['quote_number']))
        self.assertEqual(q['subtotal'], 4800.0)
        self.assertEqual(q['tax_amount'], 388.8)
        self.assertEqual(q['total_amount'], 5188.8)
        self.assertEqual(q['valid_until'], '2026-12-31')
        self.assertEqual(q['terms_conditions'], 'Gültig 30 Tage')

    def test_quote_numbering_is_separate_from_invoices(self):
        self.post_json('/api/invoices', {'customer_id': self.customer['id'], 'items': []})
        self.assertTrue(self._quote()['quote_number'].endswith('-001'))
        self.assertTrue(self._quote()['quote_number'].endswith('-002'))

    def test_get_update_delete_quote(self):
        q = self._quote()
        body = self.get_json(f'/api/quotes/{q["id"]}')
        self.assertEqual(len(body['items']), 1)

        updated = self.put_json(f'/api/quotes/{q["id"]}', {
            'status': 'accepted',
            'items': [{'description': 'Website', 'quantity': 1, 'unit_price': 5000}],
        })
        self.assertEqual(updated['status'], 'accepted')
        self.assertEqual(updated['total_amount'], 5405.0)

        self.assertEqual(self.client.delete(f'/api/quotes/{q["id"]}').status_code, 200)
        self.get_json(f'/api/quotes/{q["id"]}', expected=404)
        self.assertEqual(self.get_json('/api/quotes')['quotes'], [])

    def test_invalid_quote_status(self):
        q = self._quote()
        self.put_json(f'/api/quotes/{q["id"]}', {'status': 'paid'}, expected=400)


if __name__ == '__main__':
    unittest.main()
