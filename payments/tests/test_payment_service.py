import base64
from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from core import errors
from core.kvstore import CacheStore, InMemoryStore
from jobs.models import Job
from jobs.tests.helpers import make_job, make_user, preimage_pair
from payments.models import PaymentRecord
from payments.services import lninvoice
from payments.services.payment_service import PaymentService
from payments.services.preimage import hash_preimage
from payments.services.provider import PaymentStatus
from payments.services.provider_mock import MockLightningProvider
from payments.tasks import monitor_payments, reconcile_pending_payments
from payments.tests.helpers import with_zero_signature


class LyingProvider(MockLightningProvider):
    def check_payment_status(self, payment_hash):
        return PaymentStatus(paid=True, preimage="00" * 32)


class PaymentServiceTestBase(TestCase):
    def setUp(self):
        self.client_user = make_user("client")
        self.runner = make_user("runner")
        self.stranger = make_user("stranger")
        self.admin = make_user("admin", is_staff=True)
        self.job = make_job(self.client_user, self.runner)
        self.provider = MockLightningProvider(store=InMemoryStore())
        self.svc = PaymentService(provider=self.provider)
        self.preimage, self.payment_hash = preimage_pair()

    def _refresh(self, *objs):
        for obj in objs:
            obj.refresh_from_db()


class CreateAndConfirmTest(PaymentServiceTestBase):
    def test_create_then_confirm(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash, actor=self.client_user)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_COMPLETED)
        self.assertIsNone(payment.verification_level)

        payment = self.svc.confirm_payment(payment.id, self.preimage, actor=self.client_user)
        self.job.refresh_from_db()
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_CRYPTOGRAPHIC)
        self.assertEqual(payment.preimage, self.preimage)
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)
        self.assertIsNotNone(self.job.payment_confirmed_at)

    def test_confirm_twice(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        self.svc.confirm_payment(payment.id, self.preimage)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.confirm_payment(payment.id, self.preimage)
        self.assertEqual(ctx.exception.code, "PAYMENT_ALREADY_CONFIRMED")

    def test_wrong_preimage(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        wrong, _ = preimage_pair("wrong")
        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.confirm_payment(payment.id, wrong)
        self.assertEqual(ctx.exception.code, "PREIMAGE_MISMATCH")
        self._refresh(payment, self.job)
        self.assertIsNone(payment.preimage)
        self.assertEqual(self.job.status, Job.STATUS_COMPLETED)

    def test_malformed_preimage(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.confirm_payment(payment.id, "xyz")
        self.assertEqual(ctx.exception.code, "INVALID_PREIMAGE")

    def test_create_guards(self):
        with self.assertRaises(errors.NotFoundError) as ctx:
            self.svc.create_payment(424242, 2500)
        self.assertEqual(ctx.exception.code, "JOB_NOT_FOUND")

        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.create_payment(self.job.id, 0)
        self.assertEqual(ctx.exception.code, "INVALID_AMOUNT")

        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.create_payment(self.job.id, 2500, payment_hash="1234")
        self.assertEqual(ctx.exception.code, "INVALID_PAYMENT_HASH")

        open_job = make_job(self.client_user, self.runner, status=Job.STATUS_IN_PROGRESS)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_payment(open_job.id, 2500)
        self.assertEqual(ctx.exception.code, "JOB_NOT_COMPLETED")

        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_payment(self.job.id, 2500, actor=self.stranger)
        self.assertEqual(ctx.exception.code, "NOT_JOB_PARTICIPANT")

        self.svc.create_payment(self.job.id, 2500)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_payment(self.job.id, 2500)
        self.assertEqual(ctx.exception.code, "PAYMENT_EXISTS")

    def test_invoice_replay_on_second_job(self):
        other = make_job(self.client_user, self.runner)
        inv = self.provider.create_invoice(amount_sats=2500, memo="job")

        payment = self.svc.create_payment(self.job.id, 2500, payment_request=inv.payment_request)
        self.assertEqual(payment.payment_hash, inv.payment_hash)

        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_payment(other.id, 2500, payment_request=inv.payment_request)
        self.assertEqual(ctx.exception.code, "INVOICE_ALREADY_USED")
        self.assertFalse(PaymentRecord.objects.filter(job=other).exists())

    def test_invoice_checks_on_create(self):
        expired = lninvoice.encode(payment_hash=self.payment_hash, amount_msat=2_500_000,
                                timestamp=int((timezone.now() - timedelta(hours=2)).timestamp()))
        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.create_payment(self.job.id, 2500, payment_request=expired)
        self.assertEqual(ctx.exception.code, "INVOICE_EXPIRED")

        inv = self.provider.create_invoice(amount_sats=9000, memo="job")
        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.create_payment(self.job.id, 2500, payment_request=inv.payment_request)
        self.assertEqual(ctx.exception.code, "INVOICE_AMOUNT_MISMATCH")

        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.create_payment(self.job.id, 2500, payment_request="lnbc1notaninvoice")
        self.assertEqual(ctx.exception.code, "INVALID_INVOICE")

    def test_forged_invoice_signature_rejected(self):
        inv = self.provider.create_invoice(amount_sats=2500, memo="job")
        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.create_payment(self.job.id, 2500, payment_request=with_zero_signature(inv.payment_request))
        self.assertEqual(ctx.exception.code, "INVALID_INVOICE")
        self.assertFalse(PaymentRecord.objects.filter(job=self.job).exists())

    def test_cancelled_job_rejects_confirmation(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        # annulation concurrente (admin) entre la création et la confirmation
        Job.objects.filter(pk=self.job.pk).update(status=Job.STATUS_CANCELLED)

        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.confirm_payment(payment.id, self.preimage)
        self.assertEqual(ctx.exception.code, "JOB_NOT_COMPLETED")
        payment.refresh_from_db()
        self.assertIsNone(payment.preimage)
        self.assertIsNone(payment.verification_level)


class VerifyPaymentTest(PaymentServiceTestBase):
    def setUp(self):
        super().setUp()
        self.payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)

    def test_webln_preimage(self):
        result = self.svc.verify_payment(self.payment_hash, self.preimage, "webln", actor=self.client_user)
        self.assertTrue(result.verified)
        self.assertEqual(result.level, PaymentRecord.LEVEL_CRYPTOGRAPHIC)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

    def test_failing_preimage_does_not_mutate(self):
        wrong, _ = preimage_pair("wrong")
        result = self.svc.verify_payment(self.payment_hash, wrong, "manual")
        self.assertFalse(result.verified)
        self.assertEqual(result.level, PaymentRecord.LEVEL_DISPUTED)
        self._refresh(self.payment, self.job)
        self.assertIsNone(self.payment.verification_level)
        self.assertEqual(self.job.status, Job.STATUS_COMPLETED)

    def test_unknown_hash(self):
        with self.assertRaises(errors.NotFoundError):
            self.svc.verify_payment("ee" * 32, self.preimage, "webln")

    def test_qr_proof_goes_to_manual_review(self):
        result = self.svc.verify_payment(self.payment_hash, "lnbc-qr-payload", "qr", actor=self.client_user)
        self.assertFalse(result.verified)
        self.assertEqual(result.level, PaymentRecord.LEVEL_PENDING_MANUAL)
        self.assertEqual(list(self.svc.pending_verifications(self.runner)), [self.payment])
        self.assertEqual(list(self.svc.pending_verifications(self.client_user)), [])

    def test_upload_proof_validation(self):
        with self.assertRaises(errors.ValidationError) as ctx:
            self.svc.verify_payment(self.payment_hash, "data:text/plain;base64,aGVsbG8=", "upload")
        self.assertEqual(ctx.exception.code, "INVALID_PROOF")

        png = "data:image/png;base64," + base64.b64encode(b"\x89PNG fake screenshot").decode()
        result = self.svc.verify_payment(self.payment_hash, png, "upload")
        self.assertEqual(result.level, PaymentRecord.LEVEL_PENDING_MANUAL)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.method, PaymentRecord.METHOD_UPLOAD)
        self.assertEqual(self.payment.proof, png)

    def test_review_approve(self):
        self.svc.verify_payment(self.payment_hash, "qr", "qr")
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.review_manual_proof(self.payment.id, self.client_user, approve=True)
        self.assertEqual(ctx.exception.code, "NOT_ASSIGNED_RUNNER")

        payment = self.svc.review_manual_proof(self.payment.id, self.runner, approve=True)
        self.job.refresh_from_db()
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_VERIFIED_MANUAL)
        self.assertEqual(payment.verified_by, self.runner)
        self.assertIsNotNone(payment.paid_at)
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.review_manual_proof(self.payment.id, self.runner, approve=True)
        self.assertEqual(ctx.exception.code, "PAYMENT_NOT_PENDING_REVIEW")

    def test_manual_approval_blocks_later_confirmation(self):
        self.svc.verify_payment(self.payment_hash, "lnbc-qr-payload", "qr", actor=self.client_user)
        self.svc.review_manual_proof(self.payment.id, self.runner, approve=True)

        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.confirm_payment(self.payment.id, self.preimage, actor=self.client_user)
        self.assertEqual(ctx.exception.code, "PAYMENT_ALREADY_CONFIRMED")

        result = self.svc.verify_payment(self.payment_hash, self.preimage, "webln", actor=self.client_user)
        self.assertTrue(result.verified)
        self.assertEqual(result.level, PaymentRecord.LEVEL_VERIFIED_MANUAL)

        self._refresh(self.payment, self.job)
        self.assertIsNone(self.payment.preimage)
        self.assertEqual(self.payment.verification_level, PaymentRecord.LEVEL_VERIFIED_MANUAL)
        self.assertEqual(self.payment.verified_by, self.runner)
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

    def test_review_reject(self):
        self.svc.verify_payment(self.payment_hash, "qr", "qr")
        payment = self.svc.review_manual_proof(self.payment.id, self.admin, approve=False)
        self.job.refresh_from_db()
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_DISPUTED)
        self.assertEqual(self.job.status, Job.STATUS_DISPUTED)


class DisputeTest(PaymentServiceTestBase):
    def setUp(self):
        super().setUp()
        self.payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)

    def test_cryptographic_settlement_cannot_be_disputed(self):
        self.svc.confirm_payment(self.payment.id, self.preimage)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.dispute_payment(self.payment.id, self.client_user)
        self.assertEqual(ctx.exception.code, "PAYMENT_CRYPTOGRAPHICALLY_SETTLED")
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

    def test_manual_verification_can_be_disputed(self):
        self.svc.verify_payment(self.payment_hash, "qr", "qr")
        self.svc.review_manual_proof(self.payment.id, self.runner, approve=True)

        payment = self.svc.dispute_payment(self.payment.id, self.client_user)
        self.job.refresh_from_db()
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_DISPUTED)
        self.assertEqual(self.job.status, Job.STATUS_DISPUTED)

    def test_stranger_cannot_dispute(self):
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.dispute_payment(self.payment.id, self.stranger)
        self.assertEqual(ctx.exception.code, "NOT_JOB_PARTICIPANT")

    def test_dispute_job_routes_through_payment(self):
        job = self.svc.dispute_job(self.job.id, self.runner)
        self.assertEqual(job.status, Job.STATUS_DISPUTED)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.verification_level, PaymentRecord.LEVEL_DISPUTED)

    def test_dispute_job_after_cryptographic_settlement(self):
        self.svc.confirm_payment(self.payment.id, self.preimage)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.dispute_job(self.job.id, self.client_user)
        self.assertEqual(ctx.exception.code, "PAYMENT_CRYPTOGRAPHICALLY_SETTLED")
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)


class DisputeWithoutPaymentTest(PaymentServiceTestBase):
    def test_dispute_job_without_payment(self):
        job = self.svc.dispute_job(self.job.id, self.client_user)
        self.assertEqual(job.status, Job.STATUS_DISPUTED)
        self.assertFalse(PaymentRecord.objects.filter(job=self.job).exists())

    def test_dispute_job_guards(self):
        with self.assertRaises(errors.NotFoundError) as ctx:
            self.svc.dispute_job(424242, self.client_user)
        self.assertEqual(ctx.exception.code, "JOB_NOT_FOUND")

        with self.assertRaises(errors.ConflictError):
            self.svc.dispute_job(self.job.id, self.stranger)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_COMPLETED)


class InvoiceAndReconcileTest(PaymentServiceTestBase):
    def setUp(self):
        super().setUp()
        # horloge figée en 2023: toute facture émise est déjà expirée
        self.past_provider = MockLightningProvider(store=InMemoryStore(), clock=lambda: 1_700_000_000)

    def test_create_invoice_for_job(self):
        issued = self.svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.assertEqual(issued.invoice.amount_sats, 2500)
        self.assertEqual(issued.payment.payment_hash, issued.invoice.payment_hash)
        self.assertEqual(hash_preimage(self.provider.preimage_for(issued.invoice.payment_hash)),
                         issued.invoice.payment_hash)

        # facture encore valide: la même est renvoyée, le hash n'est pas touché
        again = self.svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.assertEqual(again.payment.id, issued.payment.id)
        self.assertEqual(again.invoice.payment_hash, issued.invoice.payment_hash)
        self.assertEqual(again.invoice.payment_request, issued.invoice.payment_request)

        # le client paie la première facture: le règlement est toujours retrouvé
        self.provider.settle(issued.invoice.payment_hash)
        preimage = self.provider.preimage_for(issued.invoice.payment_hash)
        payment = self.svc.handle_settlement_notification(issued.invoice.payment_hash, preimage)
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_CRYPTOGRAPHIC)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

    def test_expired_unpaid_invoice_is_replaced(self):
        svc = PaymentService(provider=self.past_provider)
        issued = svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.assertTrue(issued.invoice.is_expired())

        again = svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.assertEqual(again.payment.id, issued.payment.id)
        self.assertNotEqual(again.invoice.payment_hash, issued.invoice.payment_hash)
        self.assertEqual(PaymentRecord.objects.get(pk=issued.payment.id).payment_hash, again.invoice.payment_hash)

    def test_expired_but_paid_invoice_is_confirmed_not_replaced(self):
        svc = PaymentService(provider=self.past_provider)
        issued = svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.past_provider.settle(issued.invoice.payment_hash)

        with self.assertRaises(errors.ConflictError) as ctx:
            svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.assertEqual(ctx.exception.code, "PAYMENT_ALREADY_CONFIRMED")

        payment = PaymentRecord.objects.get(pk=issued.payment.id)
        self.assertEqual(payment.payment_hash, issued.invoice.payment_hash)
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_CRYPTOGRAPHIC)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

    def test_invoice_amount_cannot_change(self):
        self.svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_invoice_for_job(self.job.id, 2400, self.client_user)
        self.assertEqual(ctx.exception.code, "PAYMENT_EXISTS")

    def test_external_hash_is_never_replaced(self):
        self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        self.assertEqual(ctx.exception.code, "PAYMENT_EXISTS")
        self.assertEqual(PaymentRecord.objects.get(job=self.job).payment_hash, self.payment_hash)

    def test_create_invoice_guards(self):
        with self.assertRaises(errors.ConflictError) as ctx:
            self.svc.create_invoice_for_job(self.job.id, 2500, self.runner)
        self.assertEqual(ctx.exception.code, "NOT_JOB_OWNER")

        for amount in (0, -5, 10_000_001):
            with self.subTest(amount=amount):
                with self.assertRaises(errors.ValidationError) as ctx:
                    self.svc.create_invoice_for_job(self.job.id, amount, self.client_user)
                self.assertEqual(ctx.exception.code, "INVALID_AMOUNT")

    def test_reconcile(self):
        issued = self.svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        payment = self.svc.reconcile_payment(issued.invoice.payment_hash)
        self.assertIsNone(payment.preimage)

        self.provider.settle(issued.invoice.payment_hash)
        payment = self.svc.reconcile_payment(issued.invoice.payment_hash)
        self.assertEqual(payment.verification_level, PaymentRecord.LEVEL_CRYPTOGRAPHIC)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)

        # idempotent
        self.assertEqual(self.svc.reconcile_payment(issued.invoice.payment_hash).id, payment.id)

    def test_provider_preimage_is_verified(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        svc = PaymentService(provider=LyingProvider(store=InMemoryStore()))
        payment = svc.reconcile_payment(payment.payment_hash)
        self.assertIsNone(payment.preimage)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_COMPLETED)

    def test_settlement_notification_with_preimage(self):
        self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        payment = self.svc.handle_settlement_notification(self.payment_hash, self.preimage)
        self.assertEqual(payment.preimage, self.preimage)
        # une seconde notification est sans effet
        self.assertEqual(self.svc.handle_settlement_notification(self.payment_hash, self.preimage).id, payment.id)

    def test_reconcile_task(self):
        # backend par défaut (settings): mock adossé au cache
        svc = PaymentService()
        issued = svc.create_invoice_for_job(self.job.id, 2500, self.client_user)
        MockLightningProvider(store=CacheStore("ln-mock")).settle(issued.invoice.payment_hash)

        confirmed = reconcile_pending_payments.apply().get()
        self.assertEqual(confirmed, 1)
        self.job.refresh_from_db()
        self.assertEqual(self.job.status, Job.STATUS_PAYMENT_CONFIRMED)


class MonitoringTest(PaymentServiceTestBase):
    def _age(self, payment, hours):
        PaymentRecord.objects.filter(pk=payment.pk).update(created_at=timezone.now() - timedelta(hours=hours))

    def test_report(self):
        # facture expirée (horloge en 2023) et ancienne
        expired_svc = PaymentService(provider=MockLightningProvider(store=InMemoryStore(),
                                                                    clock=lambda: 1_700_000_000))
        expired = expired_svc.create_invoice_for_job(self.job.id, 2500, self.client_user).payment
        self._age(expired, 3)

        # facture valide mais ancienne: bloquée, pas expirée
        other = make_job(self.client_user, self.runner)
        stuck = self.svc.create_invoice_for_job(other.id, 2500, self.client_user).payment
        self._age(stuck, 2)

        # récente: ignorée
        fresh_job = make_job(self.client_user, self.runner)
        self.svc.create_invoice_for_job(fresh_job.id, 2500, self.client_user)

        # réglée: ignorée
        paid_job = make_job(self.client_user, self.runner)
        paid = self.svc.create_payment(paid_job.id, 2500, payment_hash=self.payment_hash)
        self.svc.confirm_payment(paid.id, self.preimage)
        self._age(paid, 5)

        report = self.svc.monitoring_report(stuck_after_s=3600)
        self.assertEqual(report["stuck_payments"], 2)
        self.assertEqual(report["stuck_payment_ids"], [expired.id, stuck.id])
        self.assertEqual(report["expired_invoices"], 1)
        self.assertEqual(report["expired_payment_ids"], [expired.id])
        self.assertTrue(report["lightning_ok"])

    def test_unreachable_backend_is_reported(self):
        class DownProvider(MockLightningProvider):
            def check_health(self):
                return False

        report = PaymentService(provider=DownProvider(store=InMemoryStore())).monitoring_report(3600)
        self.assertEqual(report["stuck_payments"], 0)
        self.assertFalse(report["lightning_ok"])

    def test_monitor_task(self):
        payment = self.svc.create_payment(self.job.id, 2500, payment_hash=self.payment_hash)
        self._age(payment, 48)

        report = monitor_payments.apply().get()
        self.assertEqual(report["stuck_payment_ids"], [payment.id])
        # hash seul, sans facture BOLT11: pas d'expiration connue
        self.assertEqual(report["expired_invoices"], 0)
        self.assertTrue(report["lightning_ok"])
