"""Service context.

Everything the services share (settings, content tree, background jobs,
notifier) lives in one object that gets built once and passed around,
instead of services looking things up globally.
"""
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from split_service.config import Settings, settings as default_settings
from split_service.content import ContentRepository, InMemoryContentRepository
from split_service.database import SessionLocal
from split_service.jobs import JobQueue, ThreadJobQueue

# notifier(recipient, subject, body) - called once per address
Notifier = Callable[[str, str, str], None]


@dataclass
class ServiceContext:
    settings: Settings
    content: ContentRepository
    session_factory: Callable[[], Session]
    jobs: JobQueue
    notifier: Notifier


def build_context(
    settings: Optional[Settings] = None,
    content: Optional[ContentRepository] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    jobs: Optional[JobQueue] = None,
    notifier: Optional[Notifier] = None,
) -> ServiceContext:
    """Wire up a context and subscribe the cascade listener to the content tree"""
    from split_service.services.cascade_service import CascadeListener
    from split_service.services.notification_service import log_notifier

    ctx = ServiceContext(
        settings=settings or default_settings,
        content=content or InMemoryContentRepository(),
        session_factory=session_factory or SessionLocal,
        jobs=jobs or ThreadJobQueue(),
        notifier=notifier or log_notifier,
    )
    ctx.content.subscribe(CascadeListener(ctx))
    return ctx


_context: Optional[ServiceContext] = None


def get_context() -> ServiceContext:
    """Dependency for getting the service context (FastAPI Depends)."""
    global _context
    if _context is None:
        _context = build_context()
    return _context


def set_context(ctx: ServiceContext) -> None:
    """Let the host application install its own content repository etc."""
    global _context
    _context = ctx
