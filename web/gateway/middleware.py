"""Gateway middleware: request correlation and API payload limits.

``RequestIdMiddleware`` gives every request an identifier, reusing the
client's ``X-Request-ID`` header when present. The id is stored on the
request, in ``REQUEST_ID_CTX`` (read by the logging filter and by outbound
HTTP clients) and echoed back on the response.

``ApiSizeLimitMiddleware`` refuses ``/api/`` requests whose declared body
exceeds ``settings.API_MAX_BYTES`` with a 413 before any view parses them.
"""

import contextvars
import uuid

from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
DEFAULT_MAX_API_BYTES = 1 * 1024 * 1024


class RequestIdMiddleware(MiddlewareMixin):
    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"   # header to add to outgoing responses

    def process_request(self, request):
        rid = (request.META.get(self.HEADER) or "").strip()[:128]
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        request._request_id_token = REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        token = getattr(request, "_request_id_token", None)
        if token is not None:
            # Worker threads are reused; do not leak the id into the next request.
            REQUEST_ID_CTX.reset(token)
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    def process_request(self, request):
        if not request.path.startswith("/api/"):
            return None
        limit = int(getattr(settings, "API_MAX_BYTES", DEFAULT_MAX_API_BYTES))
        clen = request.META.get("CONTENT_LENGTH")
        if clen and clen.isdigit() and int(clen) > limit:
            return JsonResponse(
                {"detail": "PAYLOAD_TOO_LARGE", "message": f"Request body exceeds {limit} bytes"},
                status=413,
            )
        return None
