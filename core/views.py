from django.http import JsonResponse
from django.utils import timezone

from x402pay import services

SERVICE_VERSION = '1.0.0'


def home(request):
    return JsonResponse({
        'service': 'x402 Nonce Facilitator',
        'status': 'running',
        'version': SERVICE_VERSION,
        'endpoints': {
            'health': '/health',
            'verify': '/verify',
            'settle': '/settle',
            'nonce': '/nonce/<nonce>',
            'stats': '/stats',
            'storeNonce': '/store-nonce',
            'cleanup': '/cleanup',
        },
    })


def health(request):
    controller = services.get_controller()
    return JsonResponse({
        'status': 'ok',
        'timestamp': timezone.now().isoformat(),
        'facilitator': controller.executor.ledger.fee_payer,
        'simulation': controller.executor.simulated,
    })
