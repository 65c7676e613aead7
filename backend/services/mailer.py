"""
Assignment emails over SMTP.

Sending is best-effort: every failure is logged and swallowed so that an
assignment is never rolled back because the mail server is unreachable.
"""

import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Any, Optional

import config
from time_utils import as_utc

logger = logging.getLogger(__name__)

FOOTER = "This is an automated message from Task Management System."


def _value(member: Any) -> str:
    return getattr(member, "value", member) or ""


def _task_lines(task: Any) -> list:
    lines = [f"Task: {task.title}"]
    if task.description:
        lines.append(f"Description: {task.description}")
    lines.append(f"Priority: {_value(task.priority)}")
    lines.append(f"Status: {_value(task.status)}")
    if task.due_date:
        lines.append(f"Due Date: {as_utc(task.due_date).date().isoformat()}")
    if task.team:
        lines.append(f"Team: {task.team}")
    return lines


def _task_html(task: Any) -> str:
    rows = "".join(f"<p>{escape(line)}</p>" for line in _task_lines(task)[1:])
    return f"<h3>{escape(task.title)}</h3>{rows}"


class Mailer:
    """
    Thin SMTP client for task notifications.

    With no ``host`` configured every send is skipped with a log line.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        sender: str = "noreply@taskmanagement.com",
        timeout: float = 10.0,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.sender = sender
        self.timeout = timeout

    @classmethod
    def from_config(cls) -> "Mailer":
        return cls(
            host=config.SMTP_HOST,
            port=config.SMTP_PORT,
            username=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            use_tls=config.SMTP_USE_TLS,
            sender=config.EMAIL_FROM,
        )

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def build_message(self, to: str, subject: str, text: str, html: Optional[str] = None) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text)
        if html:
            message.add_alternative(html, subtype="html")
        return message

    def deliver(self, message: EmailMessage) -> None:
        """Hand a message to the SMTP server. Raises on transport errors."""
        if self.port == 465:
            smtp = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            smtp = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with smtp:
            if self.use_tls and self.port != 465:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

    def send(self, to: str, subject: str, text: str, html: Optional[str] = None) -> bool:
        """Send one message. Returns True on success, False if skipped or failed."""
        if not self.configured:
            logger.info(f"📧 Email not configured, skipping '{subject}' to {to}")
            return False
        if not to:
            logger.info(f"Recipient has no email address, skipping '{subject}'")
            return False
        try:
            self.deliver(self.build_message(to, subject, text, html))
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"❌ Failed to send email '{subject}' to {to}: {e}")
            return False
        logger.info(f"✅ Email sent to {to}: {subject}")
        return True

    def send_task_assignment_email(self, assignee: Any, task: Any, assigned_by: Any) -> bool:
        text = "\n".join(
            [
                f"Hi {assignee.username},",
                "",
                f"You have been assigned a new task by {assigned_by.username}.",
                "",
                *_task_lines(task),
                "",
                "Please log in to the Task Management System to view and manage this task.",
                "",
                FOOTER,
            ]
        )
        html = (
            f"<p>Hi <strong>{escape(assignee.username)}</strong>,</p>"
            f"<p>You have been assigned a new task by <strong>{escape(assigned_by.username)}</strong>.</p>"
            f"{_task_html(task)}<p><small>{FOOTER}</small></p>"
        )
        return self.send(assignee.email, f"New Task Assigned: {task.title}", text, html)

    def send_task_reassignment_email(
        self,
        assignee: Any,
        task: Any,
        assigned_by: Any,
        previous_assignee: Optional[str] = None,
    ) -> bool:
        lines = [
            f"Hi {assignee.username},",
            "",
            f"A task has been reassigned to you by {assigned_by.username}.",
        ]
        if previous_assignee:
            lines.append(f"Previously assigned to: {previous_assignee}")
        lines += ["", *_task_lines(task), "", FOOTER]

        html = (
            f"<p>Hi <strong>{escape(assignee.username)}</strong>,</p>"
            f"<p>A task has been reassigned to you by <strong>{escape(assigned_by.username)}</strong>.</p>"
        )
        if previous_assignee:
            html += f"<p><em>Previously assigned to: {escape(previous_assignee)}</em></p>"
        html += f"{_task_html(task)}<p><small>{FOOTER}</small></p>"
        return self.send(assignee.email, f"Task Reassigned: {task.title}", "\n".join(lines), html)
