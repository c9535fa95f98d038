"""Wiring of the collaborators shared by scan, merge and review operations."""

import logging
from dataclasses import dataclass
from typing import Optional

from regintel.config.settings import Settings
from regintel.ingest.fetcher import Fetcher
from regintel.ontology.policy import PolicyStore
from regintel.services.extraction import ExtractionService, OpenAIExtractionService
from regintel.storage.download_index import DownloadIndex
from regintel.storage.object_store import ObjectStore
from regintel.storage.repository import Repository

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    policy_store: PolicyStore
    fetcher: Fetcher
    object_store: ObjectStore
    download_index: DownloadIndex
    repository: Repository
    extraction: Optional[ExtractionService] = None

    @property
    def extraction_service(self) -> ExtractionService:
        """The configured extraction service, created on first use."""
        if self.extraction is None:
            self.extraction = OpenAIExtractionService()
        return self.extraction


def build_context(
    settings: Settings,
    extraction: Optional[ExtractionService] = None,
    session=None,
) -> PipelineContext:
    """Construct a context from settings. Nothing touches the network here."""
    policy_store = PolicyStore(settings.policy_path)
    fetcher = Fetcher(
        policy_store,
        session=session,
        max_retries=settings.max_retries,
        backoff_seconds=settings.backoff_seconds,
        timeout_seconds=settings.timeout_seconds,
    )
    context = PipelineContext(
        settings=settings,
        policy_store=policy_store,
        fetcher=fetcher,
        object_store=ObjectStore(settings.object_store_dir),
        download_index=DownloadIndex(settings.download_index_path),
        repository=Repository(settings.repository_path),
        extraction=extraction,
    )
    logger.info(
        f"Pipeline context ready (objects={settings.object_store_dir}, "
        f"policy={settings.policy_path})"
    )
    return context
