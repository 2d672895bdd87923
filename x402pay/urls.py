from django.urls import path

from x402pay.views import (
    CleanupView,
    NonceDetailView,
    StatsView,
    StoreNonceView,
    X402SettleView,
    X402VerifyView,
)

app_name = 'x402'

urlpatterns = [
    path('verify', X402VerifyView.as_view(), name='verify'),
    path('settle', X402SettleView.as_view(), name='settle'),
    path('nonce/<str:nonce>', NonceDetailView.as_view(), name='nonce'),
    path('stats', StatsView.as_view(), name='stats'),
    path('store-nonce', StoreNonceView.as_view(), name='store-nonce'),
    path('cleanup', CleanupView.as_view(), name='cleanup'),
]
