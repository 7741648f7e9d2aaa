import logging
import time

from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.views.decorators.http import require_GET

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


def _body(request, message):
    return {"message": message, "requestId": getattr(request, "request_id", None)}


def error_404_view(request, exception):
    return JsonResponse(_body(request, "Not found"), status=404)


def server_error(request):
    # never leak exception detail to the client
    return JsonResponse(_body(request, "Internal server error"), status=500)


@require_GET
def liveness(request):
    return JsonResponse({"status": "ok", "uptime": round(time.monotonic() - STARTED_AT, 3)})


@require_GET
def readiness(request):
    """Ready only while the database accepts connections."""
    try:
        connection.ensure_connection()
    except DatabaseError:
        logger.exception("Readiness check failed: database unavailable")
        return JsonResponse({"status": "not-ready"}, status=503)
    return JsonResponse({"status": "ready"})
