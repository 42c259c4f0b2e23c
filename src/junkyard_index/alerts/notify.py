"""Alert delivery over email (SMTP) and Discord DMs (bot REST API).

Senders report the outcome as a DeliveryResult and never raise; the alert
engine records the outcome and moves on.
"""
import asyncio
import html
import logging
import smtplib
import ssl
from dataclasses import dataclass, field
from email.message import EmailMessage
from typing import Protocol

import aiohttp

from ..config import Settings
from ..models.vehicle import Vehicle
from ..scrapers.http import HttpTransport, check_status
from .tokens import build_unsubscribe_url

logger = logging.getLogger(__name__)

DISCORD_API = "https://discord.com/api/v10"
DISCORD_GREEN = 0x57F287
DISCORD_BLURPLE = 0x5865F2
# Discord caps a message at 10 embeds: one summary plus nine vehicles
MAX_VEHICLE_EMBEDS = 9


@dataclass
class AlertPayload:
    search_name: str
    query: str
    new_vehicles: list[Vehicle] = field(default_factory=list)
    search_url: str = ""
    search_id: str = ""


@dataclass
class DeliveryResult:
    success: bool
    error: str | None = None


class EmailSink(Protocol):
    async def send_email_alert(self, to: str, payload: AlertPayload) -> DeliveryResult: ...


class DiscordSink(Protocol):
    async def send_discord_alert(self, user_id: str, payload: AlertPayload) -> DeliveryResult: ...


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _yard_position(vehicle: Vehicle) -> str:
    yard = vehicle.yard_location
    if not yard.row:
        return ""
    return yard.row + (f", Space {yard.space}" if yard.space else "")


# ── Email ──

def build_email_bodies(payload: AlertPayload, unsubscribe_url: str | None) -> tuple[str, str]:
    """Return (plain_text, html) bodies."""
    count = len(payload.new_vehicles)
    intro = f"Found {_plural(count, 'new vehicle')} matching your search"
    if payload.query:
        intro += f' for "{payload.query}"'
    intro += "."

    lines = []
    for v in payload.new_vehicles:
        line = f"- {v.title} at {v.location.name}, {v.location.state_abbr}"
        if _yard_position(v):
            line += f" (Row {_yard_position(v)})"
        lines.append(f"{line}\n  {v.details_url}")

    plain = f"{payload.search_name}\n\n{intro}\n\n" + "\n".join(lines)
    plain += f"\n\nView all results: {payload.search_url}\n"
    if unsubscribe_url:
        plain += f"\nUnsubscribe from this alert: {unsubscribe_url}\n"

    items = "".join(
        '<li><a href="{url}">{title}</a> at {yard}, {state}</li>'.format(
            url=html.escape(v.details_url),
            title=html.escape(v.title),
            yard=html.escape(v.location.name),
            state=html.escape(v.location.state_abbr),
        )
        for v in payload.new_vehicles
    )
    footer = (
        '<p style="font-size:12px;color:#666"><a href="{}">Unsubscribe from this alert</a></p>'.format(
            html.escape(unsubscribe_url)
        )
        if unsubscribe_url
        else ""
    )
    body = (
        "<html>"
        "<body>"
        "<h2>{name}</h2>"
        "<p>{intro}</p>"
        "<ul>{items}</ul>"
        '<p><a href="{url}">View all results</a></p>'
        "{footer}"
        "</body>"
        "</html>"
    ).format(
        name=html.escape(payload.search_name),
        intro=html.escape(intro),
        items=items,
        url=html.escape(payload.search_url),
        footer=footer,
    )
    return plain, body


class EmailNotifier:
    """SMTP sender. STARTTLS on 587 when enabled, otherwise implicit SSL."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def build_message(self, to: str, payload: AlertPayload) -> EmailMessage:
        unsubscribe_url = None
        if self.settings.unsubscribe_secret and payload.search_id:
            unsubscribe_url = build_unsubscribe_url(
                self.settings.app_url, self.settings.unsubscribe_secret, payload.search_id
            )
        plain, body = build_email_bodies(payload, unsubscribe_url)

        msg = EmailMessage()
        msg["Subject"] = f"New vehicles found: {payload.search_name}"
        msg["From"] = f"Junkyard Index <{self.settings.email_from}>"
        msg["To"] = to
        if unsubscribe_url:
            msg["List-Unsubscribe"] = f"<{unsubscribe_url}>"
            msg["List-Unsubscribe-Post"] = "List-Unsubscribe=One-Click"
        msg.set_content(plain)
        msg.add_alternative(body, subtype="html")
        return msg

    def _send(self, msg: EmailMessage) -> None:
        s = self.settings
        if s.smtp_use_tls and s.smtp_port == 587:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=20) as smtp:
                smtp.ehlo()
                smtp.starttls(context=ssl.create_default_context())
                if s.smtp_username:
                    smtp.login(s.smtp_username, s.smtp_password)
                smtp.send_message(msg)
        else:
            with smtplib.SMTP_SSL(
                s.smtp_host, s.smtp_port, context=ssl.create_default_context(), timeout=20
            ) as smtp:
                if s.smtp_username:
                    smtp.login(s.smtp_username, s.smtp_password)
                smtp.send_message(msg)

    async def send_email_alert(self, to: str, payload: AlertPayload) -> DeliveryResult:
        try:
            msg = self.build_message(to, payload)
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._send, msg)
        except Exception as e:
            logger.error(f"Failed to send email alert to {to}: {e}")
            return DeliveryResult(False, str(e) or type(e).__name__)
        logger.info(f"Email alert sent to {to} (search={payload.search_id})")
        return DeliveryResult(True)


# ── Discord ──

def vehicle_embed(vehicle: Vehicle) -> dict:
    fields = [
        {
            "name": "Location",
            "value": f"{vehicle.location.name}, {vehicle.location.state_abbr}",
            "inline": True,
        }
    ]
    if _yard_position(vehicle):
        fields.append({"name": "Row", "value": _yard_position(vehicle), "inline": True})
    if vehicle.color:
        fields.append({"name": "Color", "value": vehicle.color, "inline": True})

    embed = {
        "title": vehicle.title,
        "url": vehicle.details_url,
        "color": DISCORD_BLURPLE,
        "fields": fields,
    }
    if vehicle.images:
        embed["thumbnail"] = {"url": vehicle.images[0]}
    return embed


def build_alert_message(payload: AlertPayload) -> dict:
    shown = payload.new_vehicles[:MAX_VEHICLE_EMBEDS]
    remaining = len(payload.new_vehicles) - len(shown)

    count = len(payload.new_vehicles)
    description = f"Found **{count}** new vehicle{'' if count == 1 else 's'} matching your search"
    if payload.query:
        description += f' for "{payload.query}"'
    description += "."

    main = {
        "title": f"New Vehicles Found: {payload.search_name}",
        "description": description,
        "url": payload.search_url,
        "color": DISCORD_GREEN,
    }
    if remaining > 0:
        main["footer"] = {"text": f"...and {_plural(remaining, 'more vehicle')}"}

    return {"embeds": [main, *(vehicle_embed(v) for v in shown)]}


class DiscordNotifier:
    """Sends alert DMs through the bot: open a DM channel, then post to it."""

    def __init__(self, settings: Settings, transport: HttpTransport | None = None):
        self.settings = settings
        self.transport = transport
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        if self.transport is None:
            self._session = aiohttp.ClientSession()
            self.transport = HttpTransport(
                self._session, timeout=self.settings.request_timeout_seconds
            )
        return self

    async def __aexit__(self, *args):
        if self._session:
            await self._session.close()
            self._session = None
            self.transport = None

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bot {self.settings.discord_bot_token}"}

    async def send_dm(self, user_id: str, message: dict) -> DeliveryResult:
        try:
            url = f"{DISCORD_API}/users/@me/channels"
            resp = check_status(
                await self.transport.post(
                    url, json_body={"recipient_id": user_id}, headers=self._headers
                ),
                url,
            )
            channel_id = resp.json()["id"]

            url = f"{DISCORD_API}/channels/{channel_id}/messages"
            check_status(
                await self.transport.post(url, json_body=message, headers=self._headers),
                url,
            )
        except Exception as e:
            logger.error(f"Failed to send Discord DM to {user_id}: {e}")
            return DeliveryResult(False, str(e) or type(e).__name__)
        return DeliveryResult(True)

    async def send_discord_alert(self, user_id: str, payload: AlertPayload) -> DeliveryResult:
        return await self.send_dm(user_id, build_alert_message(payload))
