from __future__ import annotations

import base64
import json
import smtplib
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any


class MessagingError(RuntimeError):
    pass


class TwilioError(MessagingError):
    pass


class TwilioRateLimited(TwilioError):
    pass


class EmailError(MessagingError):
    pass


@dataclass(frozen=True)
class TwilioClient:
    account_sid: str
    auth_token: str
    from_number: str
    base_url: str = "https://api.twilio.com"
    timeout_seconds: int = 30

    def _auth_header(self) -> str:
        token = f"{self.account_sid}:{self.auth_token}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def request_json(self, path: str, *, form: dict[str, Any], retries: int = 2) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        data = urllib.parse.urlencode({k: v for k, v in form.items() if v is not None}).encode("utf-8")

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                req = urllib.request.Request(url, data=data, method="POST")
                req.add_header("Authorization", self._auth_header())
                req.add_header("Accept", "application/json")
                req.add_header("Content-Type", "application/x-www-form-urlencoded")
                with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                    raw = resp.read()
                try:
                    return json.loads(raw.decode("utf-8"))
                except ValueError as e:
                    raise TwilioError(f"Invalid JSON from Twilio ({path})") from e
            except urllib.error.HTTPError as e:
                if e.code == 429 or e.code >= 500:
                    time.sleep(min(2 * (attempt + 1), 10))
                    last_err = TwilioRateLimited("Rate limited (429)") if e.code == 429 else e
                    continue
                body = e.read().decode("utf-8", errors="ignore")
                raise TwilioError(f"HTTP {e.code} from Twilio: {body[:300]}") from e
            except urllib.error.URLError as e:
                last_err = e
                time.sleep(min(1 * (attempt + 1), 5))
                continue
        raise TwilioError(f"Twilio request failed after retries: {last_err}")

    def send_sms(self, to: str, body: str) -> str:
        """Send one SMS and return the provider message sid."""
        j = self.request_json(
            f"/2010-04-01/Accounts/{urllib.parse.quote(self.account_sid)}/Messages.json",
            form={"To": to, "From": self.from_number, "Body": body},
        )
        sid = j.get("sid")
        if not sid:
            raise TwilioError(f"Twilio response missing sid: {str(j)[:200]}")
        return str(sid)


@dataclass(frozen=True)
class SmtpEmailClient:
    host: str
    port: int
    username: str
    password: str
    from_address: str
    timeout_seconds: int = 30

    def send_email(self, to: str, subject: str, body: str) -> str:
        msg = EmailMessage()
        msg["From"] = self.from_address
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout_seconds) as smtp:
                smtp.starttls()
                if self.username:
                    smtp.login(self.username, self.password)
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailError(f"SMTP send failed: {e}") from e
        return str(msg["Message-ID"])


def sms_client_from_config(config: dict) -> TwilioClient | None:
    sid = (config.get("TWILIO_ACCOUNT_SID") or "").strip()
    token = (config.get("TWILIO_AUTH_TOKEN") or "").strip()
    from_number = (config.get("TWILIO_FROM_NUMBER") or "").strip()
    if not (sid and token and from_number):
        return None
    return TwilioClient(account_sid=sid, auth_token=token, from_number=from_number)


def email_client_from_config(config: dict) -> SmtpEmailClient | None:
    host = (config.get("SMTP_HOST") or "").strip()
    from_address = (config.get("SMTP_FROM") or "").strip()
    if not (host and from_address):
        return None
    return SmtpEmailClient(
        host=host,
        port=int(config.get("SMTP_PORT") or 587),
        username=(config.get("SMTP_USERNAME") or "").strip(),
        password=config.get("SMTP_PASSWORD") or "",
        from_address=from_address,
    )
