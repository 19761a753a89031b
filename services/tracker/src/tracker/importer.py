from __future__ import annotations

import json
import logging
from typing import Protocol

from common.utils import parse_iso_datetime

from tracker.errors import ExtractionIncomplete, ImportFailed, ValidationError
from tracker.extraction import ExtractionClient, parse_extraction_response
from tracker.models import APPLICATION_STATUSES, DEFAULT_STATUS, Application, ApplicationCreate
from tracker.repository import ApplicationRepository

LOGGER = logging.getLogger("tracker.importer")


class TextFetcher(Protocol):
    def fetch_text(self, url: str) -> str: ...


def build_extraction_prompt(url: str, page_text: str) -> str:
    return "\n".join(
        [
            "Extract job application data from the content below.",
            "Return JSON only with keys:",
            "companyName, jobTitle, location, sourceUrl, status, applyTime, softSkills, skills.",
            "softSkills and skills must be comma-separated strings.",
            "If a value is missing, return null.",
            f'Use sourceUrl = "{url}".',
            "",
            "Content:",
            page_text,
        ]
    )


class ApplicationImporter:
    def __init__(
        self,
        repository: ApplicationRepository,
        fetcher: TextFetcher,
        client: ExtractionClient,
    ) -> None:
        self.repository = repository
        self.fetcher = fetcher
        self.client = client

    def import_from_link(self, url: str, requested_status: str | None = None) -> Application:
        """Fetch a job posting, extract its fields and persist one application.

        Nothing is written unless every earlier stage succeeded and a company
        name was extracted; the store is touched exactly once, at the end.
        """
        if requested_status is not None and requested_status not in APPLICATION_STATUSES:
            raise ValidationError(f"Invalid status: {requested_status!r}")
        LOGGER.info(json.dumps({"event": "import_started", "url": url}))
        try:
            page_text = self.fetcher.fetch_text(url)
            raw_text = self.client.generate(build_extraction_prompt(url, page_text))
            extracted = parse_extraction_response(raw_text, url)
            company_name = extracted.company_name.strip()
            if not company_name:
                raise ExtractionIncomplete("Extraction result is missing companyName")
        except ImportFailed as exc:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "import_failed",
                        "url": url,
                        "stage": exc.stage,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    }
                )
            )
            raise

        payload = ApplicationCreate(
            company_name=company_name,
            job_title=extracted.job_title,
            location=extracted.location,
            source_url=extracted.source_url,
            status=resolve_status(requested_status, extracted.status),
            apply_time=extracted.apply_time if parse_iso_datetime(extracted.apply_time) else None,
            soft_skills=extracted.soft_skills,
            skills=extracted.skills,
        )
        application = self.repository.create_application(payload)
        LOGGER.info(
            json.dumps(
                {
                    "event": "import_complete",
                    "url": url,
                    "application_id": application.id,
                    "status": application.status,
                }
            )
        )
        return application


def resolve_status(requested_status: str | None, extracted_status: str | None) -> str:
    if requested_status:
        return requested_status
    if extracted_status in APPLICATION_STATUSES:
        return extracted_status
    return DEFAULT_STATUS
