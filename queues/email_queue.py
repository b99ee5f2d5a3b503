"""Email delivery queue."""
import base64
import logging
from typing import Any, Dict, List, Optional

from mailer import Mailer
from queues.job_queue import Job, JobHandler, JobQueue

logger = logging.getLogger(__name__)

EMAIL_QUEUE = "email"
PRIORITY_URGENT = 1
PRIORITY_NORMAL = 2


class EmailQueue:
    """Queues outgoing email so requests never wait on SMTP."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    async def queue_email(
        self,
        to: str,
        subject: str,
        html: str,
        text: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
        urgent: bool = False,
    ) -> str:
        """
        Queue an email for delivery.

        Args:
            to: Recipient address
            subject: Subject line
            html: HTML body
            text: Plain-text body
            attachments: Dicts with filename, content (bytes) and content_type
            urgent: Deliver ahead of normal mail (verification links)

        Returns:
            Job id
        """
        serialized = [
            {
                "filename": att["filename"],
                "content_type": att["content_type"],
                "content": base64.b64encode(att["content"]).decode("ascii")
                if isinstance(att["content"], bytes) else att["content"],
            }
            for att in attachments or []
        ]
        job_id = await self.queue.enqueue(
            "send-email",
            {"to": to, "subject": subject, "html": html, "text": text, "attachments": serialized},
            priority=PRIORITY_URGENT if urgent else PRIORITY_NORMAL,
        )
        logger.info("Email queued", extra={"to": to, "subject": subject, "job_id": job_id})
        return job_id


def make_email_handler(mailer: Mailer) -> JobHandler:
    """Build the worker handler that delivers queued email."""

    async def send_email(job: Job) -> Dict[str, Any]:
        data = job.data
        logger.info("Sending email", extra={"to": data["to"], "subject": data["subject"], "job_id": job.id})
        # Exceptions propagate so the queue retries delivery
        await mailer.send(
            data["to"],
            data["subject"],
            data["html"],
            data["text"],
            data.get("attachments") or None,
        )
        return {"success": True, "to": data["to"], "subject": data["subject"]}

    return send_email
