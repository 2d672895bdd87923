"""
The single place where results become HTTP responses.

Every error body has the shape ``{"status": "error", "error": ..., "code": ...}``.
Payment endpoints answer 200 for domain errors so clients parse one envelope;
administrative endpoints use 400/404; infrastructure faults are always 500.
"""
from rest_framework import status
from rest_framework.response import Response

from x402pay.errors import Err, ErrorKind

INFRASTRUCTURE_KINDS = frozenset({ErrorKind.STORAGE, ErrorKind.NONCE_COLLISION})

ADMIN_STATUS = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.VALIDATION: status.HTTP_400_BAD_REQUEST,
    ErrorKind.SPLIT_MISMATCH: status.HTTP_400_BAD_REQUEST,
}


def error_body(err: Err) -> dict:
    body = {
        'status': 'error',
        'error': err.detail,
        'code': err.kind.value,
        'retryable': err.retryable,
    }
    body.update(err.extra)
    return body


def payment_error(err: Err) -> Response:
    if err.kind in INFRASTRUCTURE_KINDS:
        http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        http_status = status.HTTP_200_OK
    return Response(error_body(err), status=http_status)


def admin_error(err: Err) -> Response:
    if err.kind in INFRASTRUCTURE_KINDS:
        http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        http_status = ADMIN_STATUS.get(err.kind, status.HTTP_400_BAD_REQUEST)
    return Response(error_body(err), status=http_status)


def admin_ok(data, http_status: int = status.HTTP_200_OK) -> Response:
    return Response({'status': 'ok', 'data': data}, status=http_status)
