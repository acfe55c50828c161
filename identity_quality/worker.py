"""
Worker process entrypoint.

Builds the service container once, registers the three daemons with the
scheduler and blocks until SIGTERM/SIGINT.

Usage:
    python -m identity_quality.worker

Env vars:
    DATABASE_URL  : required
    LOG_LEVEL     : logging level (default INFO)
"""
import logging
import signal
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from identity_quality.clients.identity_store import IdentityStoreClient
from identity_quality.clients.search_provider import SearchProviderClient
from identity_quality.core.config import Settings, get_settings
from identity_quality.core.database import create_tables, get_session_factory
from identity_quality.core.events import IdentityChangeNotifier
from identity_quality.core.interfaces import DuplicateSearchProvider, IdentityStore
from identity_quality.core.scheduler_service import (
    DUPLICATES_JOB_ID,
    RESOLUTION_JOB_ID,
    SUSPICION_CONTROL_JOB_ID,
    register_daemon_jobs,
    start_scheduler,
    stop_scheduler,
)
from identity_quality.core.schemas import RequestAuthor
from identity_quality.jobs.duplicates_daemon import IdentityDuplicatesDaemon
from identity_quality.jobs.resolution_daemon import IdentityDuplicatesResolutionDaemon
from identity_quality.jobs.suspicion_control import SuspicionControlDaemon
from identity_quality.services.search_duplicates_service import (
    RetryPolicy,
    RetrySearchDuplicatesService,
    SearchDuplicatesService,
)
from identity_quality.services.suspicion_action_service import (
    SqlIndexActionChecker,
    SuspicionActionListener,
    SuspicionActionService,
)
from identity_quality.services.suspicion_service import SuspicionService

logger = logging.getLogger("worker")


class ServiceContainer:
    """
    Long-lived collaborators shared by every daemon run.

    Sessions are per run; everything else is built once.
    """

    def __init__(
        self,
        settings: Settings,
        identity_store: IdentityStore,
        search_provider: DuplicateSearchProvider,
        session_factory: Callable[[], Session],
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.identity_store = identity_store
        self.session_factory = session_factory
        self.search = RetrySearchDuplicatesService(
            SearchDuplicatesService(search_provider),
            retry_policy or RetryPolicy(
                max_attempts=settings.search_max_retry,
                delay=settings.search_retry_delay,
                backoff_factor=settings.search_retry_backoff,
            ),
        )
        self.notifier = IdentityChangeNotifier()
        self.notifier.register(SuspicionActionListener(session_factory))
        self.purge_cursor = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        return cls(
            settings,
            IdentityStoreClient(settings.identity_store_url, timeout=settings.http_timeout),
            SearchProviderClient(settings.search_provider_url, timeout=settings.http_timeout),
            get_session_factory(),
        )

    def suspicion_service(self, session: Session) -> SuspicionService:
        return SuspicionService(
            session,
            self.identity_store,
            self.notifier,
            lock_duration_seconds=self.settings.lock_duration_seconds,
            external_declaration_rule_code=self.settings.external_declaration_rule_code,
        )

    def duplicates_daemon(self, session: Session) -> IdentityDuplicatesDaemon:
        return IdentityDuplicatesDaemon(
            session,
            self.suspicion_service(session),
            self.search,
            self.identity_store,
            RequestAuthor(self.settings.duplicates_author_name),
            self.settings.client_code,
            batch_size=self.settings.duplicates_batch_size,
            purge_size=self.settings.duplicates_purge_size,
            purge_cursor=self.purge_cursor,
        )

    def suspicion_control_daemon(self, session: Session) -> SuspicionControlDaemon:
        return SuspicionControlDaemon(
            session,
            self.suspicion_service(session),
            SuspicionActionService(session),
            self.search,
            self.identity_store,
            SqlIndexActionChecker(session),
            RequestAuthor(self.settings.suspicion_control_author_name),
            self.settings.client_code,
            creation_rule_codes=self.settings.creation_rule_codes(),
            update_rule_codes=self.settings.update_rule_codes(),
            delay_seconds=self.settings.suspicion_control_delay,
            batch_size=self.settings.suspicion_control_batch_size,
        )

    def resolution_daemon(self, session: Session) -> IdentityDuplicatesResolutionDaemon:
        return IdentityDuplicatesResolutionDaemon(
            self.suspicion_service(session),
            self.search,
            self.identity_store,
            RequestAuthor(self.settings.resolution_author_name),
            self.settings.client_code,
            self.settings.resolution_rule_code,
            suspicious_limit=self.settings.resolution_suspicious_limit,
            min_certification_level=self.settings.resolution_min_certification_level,
        )

    def run_in_session(self, build) -> Dict[str, int]:
        """Build a daemon on a fresh session, run one sweep, close the session."""
        session = self.session_factory()
        try:
            return build(session).run()
        finally:
            session.close()

    def run_duplicates(self) -> Dict[str, int]:
        """Run one detection sweep and keep its purge position for the next one."""
        session = self.session_factory()
        try:
            daemon = self.duplicates_daemon(session)
            stats = daemon.run()
            self.purge_cursor = daemon.purge_cursor
            return stats
        finally:
            session.close()

    def runners(self) -> Dict[str, Callable[[], Dict[str, int]]]:
        return {
            DUPLICATES_JOB_ID: self.run_duplicates,
            SUSPICION_CONTROL_JOB_ID: lambda: self.run_in_session(self.suspicion_control_daemon),
            RESOLUTION_JOB_ID: lambda: self.run_in_session(self.resolution_daemon),
        }


def _handle_signal(signum, frame):
    """Handle SIGTERM/SIGINT for graceful shutdown."""
    logger.info(f"Received signal {signum}, shutting down gracefully...")
    stop_scheduler()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    create_tables()

    container = ServiceContainer.from_settings(settings)
    registered = register_daemon_jobs(container.runners(), settings)
    logger.info(f"Identity quality worker starting with {registered} daemons")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    start_scheduler()
    logger.info("Identity quality worker stopped")


if __name__ == "__main__":
    main()
