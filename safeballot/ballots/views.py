import logging

from django_filters.rest_framework import DjangoFilterBackend
from rest_framework import permissions
from rest_framework.filters import OrderingFilter
from rest_framework.viewsets import ReadOnlyModelViewSet

from .models import Ballot
from .serializers import BallotSerializer

logger = logging.getLogger(__name__)


class BallotViewSet(ReadOnlyModelViewSet):
    """
    API endpoint to list ballots and read a ballot's question catalog
    """

    queryset = Ballot.objects.prefetch_related("questions__choices")
    serializer_class = BallotSerializer
    permission_classes = [permissions.AllowAny]

    filter_backends = [DjangoFilterBackend, OrderingFilter]
    filterset_fields = ["status"]  # This enables filtering by the 'status' field
    ordering_fields = ["created_at", "title"]

    def retrieve(self, request, *args, **kwargs):
        logger.debug(f"Ballot requested: {kwargs.get('pk')}")
        return super().retrieve(request, *args, **kwargs)
