from rest_framework.routers import DefaultRouter

router = DefaultRouter()

# Jobs (cycle de vie: accept / start / complete / cancel / dispute / invoice)
from jobs.views import JobViewSet
router.register(r"jobs", JobViewSet, basename="jobs")

# Admin Payments (consultation + statistiques)
from payments.views.admin import PaymentAdminViewSet
router.register(r"admin/payments", PaymentAdminViewSet, basename="admin-payments")
