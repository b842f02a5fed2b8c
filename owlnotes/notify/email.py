"""
Email delivery of meeting analysis to the meeting host.

The message carries a text and an HTML part, and the merged audio as an
attachment when it is small enough. SMTP calls are blocking and run in a
worker thread.
"""

import asyncio
import html
import smtplib
from datetime import datetime
from email.message import EmailMessage

from owlnotes.analysis import AnalysisResult
from owlnotes.analysis.prompts import RECOMMENDATIONS, STRUCTURED_NOTE, SUMMARY
from owlnotes.assembler import AssembledArtifact
from owlnotes.db.jobs import MeetingMeta
from owlnotes.errors import NotificationError
from owlnotes.logger import logger
from owlnotes.settings import settings

SECTION_TITLES = {
    SUMMARY: "Summary",
    STRUCTURED_NOTE: "Structured notes",
    RECOMMENDATIONS: "Recommendations",
}

AUDIO_MIME = {
    "mp3": ("audio", "mpeg"),
    "wav": ("audio", "wav"),
}


def format_duration(duration_ms: int | None) -> str:
    if duration_ms is None:
        return "unknown"
    seconds = duration_ms // 1000
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {seconds:02d}s"
    return f"{minutes}m {seconds:02d}s"


def format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "unknown"


class EmailNotifier:
    def __init__(
        self,
        smtp_host: str | None = None,
        smtp_port: int | None = None,
        smtp_username: str | None = None,
        smtp_password: str | None = None,
        smtp_use_tls: bool | None = None,
        smtp_timeout: int | None = None,
        sender: str | None = None,
        attach_audio: bool | None = None,
        max_attachment_bytes: int | None = None,
    ):
        self.smtp_host = smtp_host or settings.SMTP_HOST
        self.smtp_port = smtp_port or settings.SMTP_PORT
        self.smtp_username = smtp_username or settings.SMTP_USERNAME
        self.smtp_password = smtp_password or settings.SMTP_PASSWORD
        self.smtp_use_tls = (
            settings.SMTP_USE_TLS if smtp_use_tls is None else smtp_use_tls
        )
        self.smtp_timeout = smtp_timeout or settings.SMTP_TIMEOUT
        self.sender = sender or settings.EMAIL_SENDER
        self.attach_audio = (
            settings.EMAIL_ATTACH_AUDIO if attach_audio is None else attach_audio
        )
        self.max_attachment_bytes = (
            max_attachment_bytes or settings.EMAIL_MAX_ATTACHMENT_BYTES
        )

    def subject(self, meta: MeetingMeta) -> str:
        return f"Owl Meeting Notes - {meta.title or 'Meeting'}"

    def build_message(
        self,
        recipient: str,
        analysis: AnalysisResult,
        artifact: AssembledArtifact,
        meta: MeetingMeta,
        duration_ms: int | None = None,
    ) -> EmailMessage:
        details = [
            ("Meeting", meta.title or "Meeting"),
            ("Host", meta.host_name or "Host"),
            ("Participants", ", ".join(meta.participants) or "none recorded"),
            ("Start", format_time(meta.start_time)),
            ("End", format_time(meta.end_time)),
            ("Duration", format_duration(duration_ms)),
        ]

        text_lines = [f"{label}: {value}" for label, value in details]
        html_parts = [
            "<html><body>",
            f"<h2>{html.escape(self.subject(meta))}</h2>",
            "<table>",
            *[
                f"<tr><th align='left'>{html.escape(label)}</th>"
                f"<td>{html.escape(value)}</td></tr>"
                for label, value in details
            ],
            "</table>",
        ]

        for kind, title in SECTION_TITLES.items():
            section = analysis.sections.get(kind)
            if section is None:
                continue
            content = section.content if section.ok else "(not available)"
            text_lines += ["", title, "-" * len(title), content]
            html_parts += [
                f"<h3>{html.escape(title)}</h3>",
                f"<p style='white-space: pre-wrap'>{html.escape(content)}</p>",
            ]

        text_lines += ["", f"Recording: {artifact.url}"]
        html_parts += [
            f"<p><a href='{html.escape(artifact.url, quote=True)}'>"
            "Listen to the recording</a></p>",
            "</body></html>",
        ]

        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = recipient
        msg["Subject"] = self.subject(meta)
        msg.set_content("\n".join(text_lines))
        msg.add_alternative("\n".join(html_parts), subtype="html")

        if self.attach_audio:
            self._attach_audio(msg, artifact)
        return msg

    def _attach_audio(self, msg: EmailMessage, artifact: AssembledArtifact):
        ext = artifact.path.suffix.lstrip(".")
        if ext not in AUDIO_MIME or not artifact.path.exists():
            return
        if artifact.size > self.max_attachment_bytes:
            logger.info(
                "Recording too large to attach, link only",
                size=artifact.size,
                limit=self.max_attachment_bytes,
            )
            return
        maintype, subtype = AUDIO_MIME[ext]
        msg.add_attachment(
            artifact.path.read_bytes(),
            maintype=maintype,
            subtype=subtype,
            filename=f"meeting.{ext}",
        )

    def _send(self, msg: EmailMessage):
        if not self.smtp_host:
            raise NotificationError("SMTP_HOST is not configured")
        try:
            with smtplib.SMTP(
                self.smtp_host, self.smtp_port, timeout=self.smtp_timeout
            ) as smtp:
                if self.smtp_use_tls:
                    smtp.starttls()
                if self.smtp_username:
                    smtp.login(self.smtp_username, self.smtp_password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationError(f"SMTP delivery failed: {e}") from e

    async def notify(
        self,
        recipient: str | None,
        analysis: AnalysisResult,
        artifact: AssembledArtifact,
        meta: MeetingMeta,
        duration_ms: int | None = None,
    ) -> bool:
        """Send the analysis to `recipient`. Returns whether it was sent.

        Never raises: delivery problems are logged and reported as False.
        """
        if not recipient:
            logger.info("No recipient for meeting notes, skipping email")
            return False

        try:
            msg = self.build_message(recipient, analysis, artifact, meta, duration_ms)
            logger.info("Sending meeting notes", to=recipient, subject=msg["Subject"])
            await asyncio.to_thread(self._send, msg)
        except NotificationError as e:
            logger.error("Meeting notes not sent", to=recipient, error=str(e))
            return False
        except Exception as e:
            logger.error(
                "Meeting notes not sent", to=recipient, error=str(e), exc_info=e
            )
            return False

        logger.info("Meeting notes sent", to=recipient)
        return True
