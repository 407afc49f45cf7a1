import json

import httpx
from django.test import SimpleTestCase

from core import errors
from core.kvstore import InMemoryStore
from payments.services import lninvoice
from payments.services.preimage import hash_preimage
from payments.services.provider_lnbits import LnbitsLightningProvider
from payments.services.provider_mock import MockLightningProvider


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class MockProviderTest(SimpleTestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.store = InMemoryStore(clock=self.clock)
        self.provider = MockLightningProvider(store=self.store)

    def test_invoice_hash_matches_preimage(self):
        inv = self.provider.create_invoice(amount_sats=2500, memo="job #1", expiry=600)
        self.assertEqual(inv.amount_sats, 2500)
        self.assertEqual(inv.expiry, 600)
        self.assertEqual(inv.description, "job #1")
        self.assertEqual(lninvoice.decode(inv.payment_request).payment_hash, inv.payment_hash)
        self.assertEqual(hash_preimage(self.provider.preimage_for(inv.payment_hash)), inv.payment_hash)

    def test_settle_flow(self):
        inv = self.provider.create_invoice(amount_sats=100, memo="x")
        self.assertFalse(self.provider.check_payment_status(inv.payment_hash).paid)

        self.provider.settle(inv.payment_hash)
        status = self.provider.check_payment_status(inv.payment_hash)
        self.assertTrue(status.paid)
        self.assertEqual(hash_preimage(status.preimage), inv.payment_hash)

    def test_send_payment_returns_preimage(self):
        inv = self.provider.create_invoice(amount_sats=100, memo="x")
        sent = self.provider.send_payment(inv.payment_request)
        self.assertEqual(sent.payment_hash, inv.payment_hash)
        self.assertEqual(hash_preimage(sent.preimage), inv.payment_hash)

    def test_store_entries_expire(self):
        inv = self.provider.create_invoice(amount_sats=100, memo="x", expiry=60)
        self.clock.now += 61
        self.assertIsNone(self.provider.preimage_for(inv.payment_hash))
        self.assertIsNone(self.provider.settle(inv.payment_hash))
        self.assertEqual(self.store.sweep(), 0)
        self.assertEqual(len(self.store), 0)


class LnbitsProviderTest(SimpleTestCase):
    def _provider(self, handler):
        return LnbitsLightningProvider(base_url="https://lnbits.test", api_key="invoice-key",
                                       timeout_s=5, transport=httpx.MockTransport(handler))

    def test_create_invoice(self):
        payment_hash = "cd" * 32
        pr = lninvoice.encode(payment_hash=payment_hash, timestamp=1_700_000_000, amount_msat=2_500_000)
        seen = {}

        def handler(request):
            seen["key"] = request.headers["X-Api-Key"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"payment_hash": payment_hash, "payment_request": pr})

        inv = self._provider(handler).create_invoice(amount_sats=2500, memo="job", expiry=900)
        self.assertEqual(inv.payment_hash, payment_hash)
        self.assertEqual(seen["key"], "invoice-key")
        self.assertEqual(seen["body"], {"out": False, "amount": 2500, "memo": "job", "expiry": 900})

    def test_hash_disagreement_is_rejected(self):
        pr = lninvoice.encode(payment_hash="cd" * 32, timestamp=1_700_000_000, amount_msat=2_500_000)

        def handler(request):
            return httpx.Response(201, json={"payment_hash": "ef" * 32, "payment_request": pr})

        with self.assertRaises(errors.ServiceUnavailableError):
            self._provider(handler).create_invoice(amount_sats=2500, memo="job")

    def test_transport_errors(self):
        def down(request):
            raise httpx.ConnectError("connection refused")

        def boom(request):
            return httpx.Response(500, text="oops")

        for handler in (down, boom):
            with self.subTest(handler=handler.__name__):
                with self.assertRaises(errors.ServiceUnavailableError) as ctx:
                    self._provider(handler).check_payment_status("cd" * 32)
                self.assertEqual(ctx.exception.code, "LIGHTNING_UNAVAILABLE")

    def test_payment_status(self):
        def handler(request):
            self.assertEqual(request.url.path, "/api/v1/payments/" + "cd" * 32)
            return httpx.Response(200, json={"paid": True, "preimage": "ab" * 32})

        status = self._provider(handler).check_payment_status("CD" * 32)
        self.assertTrue(status.paid)
        self.assertEqual(status.preimage, "ab" * 32)

    def test_send_payment_fetches_missing_preimage(self):
        calls = []

        def handler(request):
            calls.append((request.method, request.url.path))
            if request.method == "POST":
                self.assertEqual(json.loads(request.content), {"out": True, "bolt11": "lnbcrt-runner"})
                return httpx.Response(201, json={"payment_hash": "CD" * 32, "checking_id": "x"})
            return httpx.Response(200, json={"paid": True, "preimage": "ab" * 32})

        sent = self._provider(handler).send_payment("lnbcrt-runner")
        self.assertEqual(sent.payment_hash, "cd" * 32)
        self.assertEqual(sent.preimage, "ab" * 32)
        self.assertEqual(calls, [("POST", "/api/v1/payments"), ("GET", "/api/v1/payments/" + "cd" * 32)])

    def test_check_health(self):
        def ok(request):
            self.assertEqual(request.url.path, "/api/v1/wallet")
            return httpx.Response(200, json={"name": "errandbit", "balance": 21_000})

        def down(request):
            raise httpx.ConnectError("connection refused")

        self.assertTrue(self._provider(ok).check_health())
        self.assertFalse(self._provider(down).check_health())
