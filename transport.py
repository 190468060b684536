# transport.py
import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from config import GRAPH_API_VERSION, WHATSAPP_PHONE_NUMBER_ID, WHATSAPP_TOKEN

logger = logging.getLogger("transport")

MEDIA_KINDS = ("image", "video", "audio", "document", "sticker")
_CAPTIONED = {"image", "video", "document"}


@dataclass
class MediaDescriptor:
    kind: str                       # one of MEDIA_KINDS
    data: bytes
    mime_type: str
    caption: Optional[str] = None
    file_name: Optional[str] = None


@dataclass
class InboundMessage:
    sender_id: str
    text: str = ""
    media: Optional[MediaDescriptor] = None
    # Set by transports that deliver the quoted body. The Cloud API only sends
    # context.id for replies, so parse_webhook leaves it unset.
    quoted: Optional["InboundMessage"] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class Transport(abc.ABC):
    """Outbound half of the messaging channel."""

    @abc.abstractmethod
    async def send_text(self, recipient_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    async def send_media(self, recipient_id: str, media: MediaDescriptor) -> None:
        ...

    async def close(self) -> None:
        pass


class WhatsAppCloudTransport(Transport):
    """WhatsApp Cloud API over the Graph API."""

    def __init__(self, token: str = WHATSAPP_TOKEN, phone_number_id: str = WHATSAPP_PHONE_NUMBER_ID,
                 api_version: str = GRAPH_API_VERSION, session: Optional[aiohttp.ClientSession] = None):
        if not token or not phone_number_id:
            raise RuntimeError("Missing WHATSAPP_TOKEN or WHATSAPP_PHONE_NUMBER_ID")
        self._token = token
        self._phone_number_id = phone_number_id
        self._base = f"https://graph.facebook.com/{api_version}"
        self._session = session

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=aiohttp.ClientTimeout(total=30),
            )
        return self._session

    async def _post_message(self, body: Dict[str, Any]) -> None:
        body = {"messaging_product": "whatsapp", **body}
        async with self._http().post(f"{self._base}/{self._phone_number_id}/messages", json=body) as resp:
            if resp.status >= 400:
                detail = await resp.text()
                raise RuntimeError(f"WhatsApp send failed ({resp.status}): {detail}")

    async def send_text(self, recipient_id: str, text: str) -> None:
        await self._post_message({"to": recipient_id, "type": "text", "text": {"body": text}})

    async def _upload(self, media: MediaDescriptor) -> str:
        form = aiohttp.FormData()
        form.add_field("messaging_product", "whatsapp")
        form.add_field("type", media.mime_type)
        form.add_field("file", media.data, filename=media.file_name or media.kind,
                       content_type=media.mime_type)
        async with self._http().post(f"{self._base}/{self._phone_number_id}/media", data=form) as resp:
            payload = await resp.json(content_type=None)
            if resp.status >= 400 or "id" not in payload:
                raise RuntimeError(f"WhatsApp media upload failed ({resp.status}): {payload}")
            return payload["id"]

    async def send_media(self, recipient_id: str, media: MediaDescriptor) -> None:
        if media.kind not in MEDIA_KINDS:
            raise ValueError(f"Unsupported media kind: {media.kind}")
        media_id = await self._upload(media)
        obj: Dict[str, Any] = {"id": media_id}
        if media.kind in _CAPTIONED and media.caption:
            obj["caption"] = media.caption
        if media.kind == "document":
            obj["filename"] = media.file_name or "document"
        await self._post_message({"to": recipient_id, "type": media.kind, media.kind: obj})

    async def download_media(self, media_id: str) -> Optional[bytes]:
        async with self._http().get(f"{self._base}/{media_id}") as resp:
            meta = await resp.json(content_type=None)
        url = meta.get("url") if isinstance(meta, dict) else None
        if not url:
            logger.warning("No download url for media %s: %s", media_id, meta)
            return None
        async with self._http().get(url) as resp:
            if resp.status >= 400:
                logger.warning("Media download %s failed with HTTP %s", media_id, resp.status)
                return None
            return await resp.read()

    async def parse_webhook(self, payload: Dict[str, Any]) -> List[InboundMessage]:
        """Turn a webhook POST body into inbound messages (media already downloaded)."""
        out: List[InboundMessage] = []
        for entry in payload.get("entry", []) or []:
            for change in entry.get("changes", []) or []:
                value = change.get("value", {}) or {}
                for msg in value.get("messages", []) or []:
                    sender = msg.get("from")
                    if not sender:
                        continue
                    kind = msg.get("type")
                    if kind == "text":
                        text = ((msg.get("text") or {}).get("body") or "").strip()
                        out.append(InboundMessage(sender_id=sender, text=text, raw=msg))
                    elif kind in MEDIA_KINDS:
                        info = msg.get(kind) or {}
                        data = await self.download_media(info.get("id", "")) if info.get("id") else None
                        media = None
                        if data is not None:
                            media = MediaDescriptor(
                                kind=kind,
                                data=data,
                                mime_type=info.get("mime_type", "application/octet-stream"),
                                caption=info.get("caption"),
                                file_name=info.get("filename"),
                            )
                        out.append(InboundMessage(
                            sender_id=sender, text=(info.get("caption") or "").strip(),
                            media=media, raw=msg,
                        ))
                    else:
                        out.append(InboundMessage(sender_id=sender, raw=msg))
        return out

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
