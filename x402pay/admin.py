from django.contrib import admin

from x402pay.models import NonceRecord, TransactionRecord


@admin.register(NonceRecord)
class NonceRecordAdmin(admin.ModelAdmin):
    list_display = ("nonce", "amount", "recipient", "status", "transaction_signature", "expiry", "created_at")
    list_filter = ("status",)
    search_fields = ("nonce", "recipient", "client_public_key", "transaction_signature")


@admin.register(TransactionRecord)
class TransactionRecordAdmin(admin.ModelAdmin):
    list_display = ("nonce", "status", "transaction_signature", "created_at")
    list_filter = ("status",)
    search_fields = ("nonce", "transaction_signature")
    readonly_fields = ("nonce", "transaction_signature", "status", "error_message", "created_at")
