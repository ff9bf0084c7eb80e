import httpx
from core.logger import setup_logger
from config_loader import get_setting

logger = setup_logger("WhatsAppClient")

MEDIA_KINDS = ("image", "video", "document")


class EvolutionClient:
    """
    Gateway de mensagens (Evolution API).
    `send` nunca lança erro de rede/HTTP: devolve {"success": False, "error": ...}.
    """

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport = None):
        self.timeout = timeout
        # transport permite injetar um MockTransport nos testes
        self.transport = transport

    def _resolve(self, connection):
        api_url = getattr(connection, "api_url", None) or get_setting("EVOLUTION_API_URL")
        api_key = getattr(connection, "api_key", None) or get_setting("EVOLUTION_API_KEY")
        return (api_url or "").rstrip("/"), api_key

    def _build_request(self, instance: str, recipient: str, text: str, kind: str, media_url: str = None):
        if kind == "text":
            return f"/message/sendText/{instance}", {"number": recipient, "text": text}
        if kind == "audio":
            return f"/message/sendWhatsAppAudio/{instance}", {"number": recipient, "audio": media_url, "delay": 1200}

        # image, video, document
        body = {"number": recipient, "mediatype": kind if kind in MEDIA_KINDS else "document", "media": media_url}
        if text:
            body["caption"] = text
        return f"/message/sendMedia/{instance}", body

    async def send(self, connection, recipient: str, text: str, kind: str = "text", media_url: str = None) -> dict:
        api_url, api_key = self._resolve(connection)
        instance = getattr(connection, "instance_name", None)
        if not api_url or not instance:
            logger.warning("⚠️ Evolution API not configured for this connection. Message not sent.")
            return {"success": False, "error": "Evolution API not configured"}

        endpoint, body = self._build_request(instance, recipient, text, kind, media_url)
        headers = {"Content-Type": "application/json", "apikey": api_key or ""}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(f"{api_url}{endpoint}", json=body, headers=headers)
            except httpx.HTTPError as e:
                logger.error(f"❌ Error sending {kind} to {recipient}: {e}")
                return {"success": False, "error": str(e)}

        if response.is_error:
            try:
                detail = response.json().get("message")
            except ValueError:
                detail = None
            logger.error(f"❌ Evolution API returned {response.status_code} for {kind} to {recipient}")
            return {"success": False, "error": str(detail or "Failed to send message")}

        try:
            data = response.json()
        except ValueError:
            data = {}
        message_id = (data.get("key") or {}).get("id") if isinstance(data, dict) else None
        logger.info(f"✅ {kind} sent to {recipient} (id: {message_id})")
        return {"success": True, "messageId": message_id}

    async def check_status(self, connection) -> str:
        api_url, api_key = self._resolve(connection)
        instance = getattr(connection, "instance_name", None)
        if not api_url or not instance:
            return "offline"
        try:
            async with httpx.AsyncClient(timeout=3.0, transport=self.transport) as client:
                res = await client.get(f"{api_url}/instance/connectionState/{instance}", headers={"apikey": api_key or ""})
        except httpx.HTTPError:
            return "timeout"
        if res.status_code != 200:
            return f"error ({res.status_code})"
        state = (res.json().get("instance") or {}).get("state")
        return "online" if state == "open" else "disconnected"
