from rest_framework.routers import SimpleRouter

from .views import BallotViewSet

app_name = "ballots"

router = SimpleRouter()
router.register(r"", BallotViewSet, basename="ballot")

urlpatterns = router.urls
