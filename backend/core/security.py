import os

from slowapi import Limiter
from slowapi.util import get_remote_address

# Instância compartilhada do Limiter (usada nos webhooks de mensagens)
WEBHOOK_RATE_LIMIT = os.getenv("WEBHOOK_RATE_LIMIT", "300/minute")

limiter = Limiter(key_func=get_remote_address, default_limits=["100/minute"])
