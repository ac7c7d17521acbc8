# tests/fakes.py

from dataclasses import dataclass, field
from typing import Optional

from task_pipeline.services.notifier import MailResult


@dataclass
class SentMail:
    to: str
    subject: str
    body_html: str


@dataclass
class FakeNotifier:
    """
    Records every send_mail call.

    - recipients in `fail_for` get an error result
    - recipients in `raise_for` make send_mail raise
    """

    fail_for: set[str] = field(default_factory=set)
    raise_for: set[str] = field(default_factory=set)
    attempts: list[SentMail] = field(default_factory=list)
    closed: bool = False

    async def send_mail(self, to: str, subject: str, body_html: str) -> MailResult:
        self.attempts.append(SentMail(to, subject, body_html))
        if to in self.raise_for:
            raise ConnectionError(f"SMTP relay unreachable for {to}")
        if to in self.fail_for:
            return MailResult(ok=False, error="mailbox unavailable")
        return MailResult(ok=True)

    async def close(self) -> None:
        self.closed = True

    @property
    def delivered(self) -> list[SentMail]:
        return [m for m in self.attempts if m.to not in self.fail_for and m.to not in self.raise_for]

    def subjects_for(self, to: Optional[str] = None) -> list[str]:
        return [m.subject for m in self.attempts if to is None or m.to == to]
