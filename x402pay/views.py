"""
x402 facilitator HTTP endpoints.
"""
from loguru import logger
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from x402pay import services
from x402pay.errors import Err, ValidationError
from x402pay.responses import admin_error, admin_ok, payment_error
from x402pay.types import IssueNonceRequest, PaymentRequest, parse_split_spec


class FacilitatorAPIView(APIView):
    authentication_classes: list = []
    permission_classes: list = []


class X402VerifyView(FacilitatorAPIView):
    """
    Check a signed authorization against its issued nonce.

    Verification does not consume the nonce; it may be repeated.
    """

    def post(self, request, *args, **kwargs):
        try:
            payment_request = PaymentRequest.deserialize(request.data)
        except ValidationError as exc:
            logger.info('x402 verification failed: {}', exc.message)
            return payment_error(Err.from_exception(exc))

        result = services.get_controller().verify(payment_request)
        if not result.ok:
            return payment_error(result)

        verified = result.value
        return Response(
            {
                'status': 'verified',
                'nonce': verified.nonce,
                'payer': verified.payer,
                'amount': verified.amount,
                'expiry': verified.expiry,
            },
            status=status.HTTP_200_OK,
        )


class X402SettleView(FacilitatorAPIView):
    """
    Settle a verified authorization on-chain, exactly once per nonce.
    """

    def post(self, request, *args, **kwargs) -> Response:
        raw = request.data.get('paymentRequest') if hasattr(request.data, 'get') else None
        if not raw:
            return payment_error(Err.from_exception(ValidationError('Payment request is required')))

        try:
            payment_request = PaymentRequest.deserialize(raw)
        except ValidationError as exc:
            logger.info('x402 settlement validation failed: {}', exc.message)
            return payment_error(Err.from_exception(exc))

        result = services.get_controller().settle(payment_request)
        if not result.ok:
            return payment_error(result)

        settled = result.value
        return Response(
            {
                'status': 'settled',
                'transactionSignature': settled.transaction_signature,
                'nonce': settled.nonce,
            },
            status=status.HTTP_200_OK,
        )


class NonceDetailView(FacilitatorAPIView):
    def get(self, request, nonce: str, *args, **kwargs):
        result = services.get_controller().get_nonce(nonce)
        if not result.ok:
            return admin_error(result)
        return admin_ok(result.value.to_dict())


class StoreNonceView(FacilitatorAPIView):
    """Issue a new nonce and return the payload the client must sign."""

    def post(self, request, *args, **kwargs):
        try:
            params = IssueNonceRequest.model_validate(request.data)
            split = parse_split_spec(params.split_payment)
        except PydanticValidationError as exc:
            logger.debug('pydantic validation failed: {}', exc)
            return admin_error(Err.from_exception(ValidationError('Invalid nonce issuance parameters.')))
        except ValidationError as exc:
            return admin_error(Err.from_exception(exc))

        result = services.get_controller().issue_nonce(
            amount=params.amount,
            recipient=params.recipient,
            split=split,
            ttl_seconds=params.ttl_seconds,
            resource_id=params.resource_id,
            resource_url=params.resource_url,
        )
        if not result.ok:
            return admin_error(result)

        issued = result.value
        data = issued.record.to_dict()
        data['payload'] = issued.payload.model_dump(by_alias=True)
        return admin_ok(data, http_status=status.HTTP_201_CREATED)


class StatsView(FacilitatorAPIView):
    def get(self, request, *args, **kwargs):
        result = services.get_controller().stats()
        if not result.ok:
            return admin_error(result)
        return admin_ok(result.value)


class CleanupView(FacilitatorAPIView):
    def post(self, request, *args, **kwargs):
        result = services.get_controller().sweep_expired()
        if not result.ok:
            return admin_error(result)
        return admin_ok({'cleaned': result.value})
