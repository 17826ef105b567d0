"""Versioned, size-aware context persistence shared between agents."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_random

from gapminer.config import settings
from gapminer.errors import ContextError
from gapminer.models import Context, ContextVersion
from gapminer.services.blob_store import LocalBlobStore

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_.:/-]+$")
_SUMMARY_CHARS = 200


def micro_key(iteration: int, paper_id: str) -> str:
    return f"micro/{iteration}/{paper_id}"


def clusters_key(iteration: int) -> str:
    return f"meso/{iteration}/clusters"


def meta_key(iteration: int) -> str:
    return f"meta/{iteration}/output"


@dataclass
class StoredContext:
    """A rehydrated context version."""

    context_id: UUID
    key: str
    version: int
    value: Any
    summary: str
    size_bytes: int
    storage_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


class _VersionCollision(Exception):
    """Another writer committed the same version first."""


def summarize(value: Any) -> str:
    """Short human-readable description of a context value."""
    if isinstance(value, list):
        return f"List with {len(value)} items"
    if isinstance(value, dict):
        keys = list(value.keys())
        shown = ", ".join(str(k) for k in keys[:10])
        if len(keys) > 10:
            shown += f", ... (+{len(keys) - 10})"
        return f"Object with keys: {shown}"
    if isinstance(value, str):
        if len(value) <= _SUMMARY_CHARS:
            return value
        return value[:_SUMMARY_CHARS] + "..."
    return str(value)[:_SUMMARY_CHARS]


def merge_values(existing: Any, addition: Any) -> Tuple[Any, str]:
    """
    Merge an appended value into the current one by shape.

    Returns:
        Tuple of (merged value, diff summary)

    Raises:
        ContextError: If the shapes differ or cannot be merged
    """
    if isinstance(existing, list) and isinstance(addition, list):
        return existing + addition, f"+{len(addition)} items"
    if isinstance(existing, dict) and isinstance(addition, dict):
        new_keys = [k for k in addition if k not in existing]
        merged = dict(existing)
        merged.update(addition)
        return merged, f"+{len(new_keys)} keys"
    if isinstance(existing, str) and isinstance(addition, str):
        return f"{existing}\n\n{addition}", f"+{len(addition)} chars"
    raise ContextError(
        f"Cannot append {type(addition).__name__} to {type(existing).__name__}"
    )


class ContextStore:
    """Versioned key/value store scoped by run.

    Each write runs in its own session so it never shares a transaction with
    the caller. Per (run_id, key) versions are contiguous from 1 and only the
    highest is active.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        blob_store: Optional[LocalBlobStore] = None,
        inline_max_bytes: Optional[int] = None,
        max_bytes: Optional[int] = None,
        write_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.blob_store = blob_store or LocalBlobStore()
        self.inline_max_bytes = inline_max_bytes or settings.CONTEXT_INLINE_MAX_BYTES
        self.max_bytes = max_bytes or settings.CONTEXT_MAX_BYTES
        self.write_attempts = write_attempts or settings.CONTEXT_WRITE_ATTEMPTS

    @staticmethod
    def _validate_key(key: str) -> None:
        if not key or not _KEY_RE.match(key) or ".." in key or key.startswith("/"):
            raise ContextError(f"Invalid context key: {key!r}")

    def put(self, run_id: UUID, key: str, value: Any, agent_ref: Optional[UUID] = None) -> StoredContext:
        """
        Store a new version of ``key``, replacing the active one.

        Args:
            run_id: Owning run
            key: Context key, e.g. ``micro/1/paper-3``
            value: JSON-serialisable value
            agent_ref: Agent row that produced the value

        Returns:
            The stored version
        """
        return self._write(run_id, key, value, agent_ref, append=False)

    def append(self, run_id: UUID, key: str, value: Any, agent_ref: Optional[UUID] = None) -> StoredContext:
        """Merge ``value`` into the active version and store the result as a new version."""
        return self._write(run_id, key, value, agent_ref, append=True)

    def _write(self, run_id: UUID, key: str, value: Any, agent_ref: Optional[UUID], append: bool) -> StoredContext:
        self._validate_key(key)

        retrying = Retrying(
            retry=retry_if_exception_type(_VersionCollision),
            stop=stop_after_attempt(self.write_attempts),
            wait=wait_random(0, 0.05),
        )
        try:
            for attempt in retrying:
                with attempt:
                    return self._write_once(run_id, key, value, agent_ref, append)
        except RetryError as e:
            raise ContextError(
                f"Could not write context {key!r} after {self.write_attempts} attempts"
            ) from e

    def _write_once(
        self, run_id: UUID, key: str, value: Any, agent_ref: Optional[UUID], append: bool
    ) -> StoredContext:
        session = self.session_factory()
        blob_path = None
        try:
            current = session.execute(
                select(Context)
                .where(
                    Context.run_id == run_id,
                    Context.context_key == key,
                    Context.is_active.is_(True),
                )
                .with_for_update()
            ).scalar_one_or_none()

            diff_summary = None
            if current is None:
                operation = "create"
                new_value = value
            elif append:
                operation = "append"
                new_value, diff_summary = merge_values(self._load_value(current), value)
            else:
                operation = "overwrite"
                new_value = value

            try:
                encoded = json.dumps(new_value, default=str).encode("utf-8")
            except (TypeError, ValueError) as e:
                raise ContextError(f"Context value for {key!r} is not serialisable: {e}") from e

            size = len(encoded)
            if size > self.max_bytes:
                raise ContextError(
                    f"Context {key!r} is {size} bytes, exceeds maximum {self.max_bytes}"
                )

            version = current.version + 1 if current is not None else 1
            summary = summarize(new_value)

            if size > self.inline_max_bytes:
                blob_path = self.blob_store.write(run_id, key, version, encoded)
                storage_type = self.blob_store.storage_type
                inline_value = None
            else:
                storage_type = "database"
                inline_value = json.loads(encoded)

            if current is not None:
                current.is_active = False
                session.flush()

            context = Context(
                run_id=run_id,
                agent_ref=agent_ref,
                context_key=key,
                value=inline_value,
                storage_path=blob_path,
                storage_type=storage_type,
                size_bytes=size,
                version=version,
                is_active=True,
                summary=summary,
                metadata_={"operation": operation},
            )
            session.add(context)
            session.flush()

            session.add(
                ContextVersion(
                    context_id=context.id,
                    version=version,
                    storage_path=blob_path,
                    size_bytes=size,
                    operation=operation,
                    modified_by_agent=agent_ref,
                    diff_summary=diff_summary,
                )
            )
            session.commit()

            logger.debug(f"Context {key} v{version} written ({operation}, {size} bytes, {storage_type})")

            return StoredContext(
                context_id=context.id,
                key=key,
                version=version,
                value=new_value,
                summary=summary,
                size_bytes=size,
                storage_type=storage_type,
                metadata={"operation": operation},
            )

        except IntegrityError as e:
            session.rollback()
            if blob_path:
                self.blob_store.delete(blob_path)
            logger.info(f"Version collision writing context {key}, retrying")
            raise _VersionCollision(str(e)) from e
        except Exception:
            session.rollback()
            if blob_path:
                self.blob_store.delete(blob_path)
            raise
        finally:
            session.close()

    def _load_value(self, context: Context) -> Any:
        if context.storage_path:
            return json.loads(self.blob_store.read(context.storage_path).decode("utf-8"))
        return context.value

    def get(self, run_id: UUID, key: str, version: Optional[int] = None) -> Optional[StoredContext]:
        """
        Read a context value, rehydrating offloaded payloads.

        Args:
            run_id: Owning run
            key: Context key
            version: Specific version; latest active when omitted

        Returns:
            StoredContext, or None if no such key/version exists
        """
        self._validate_key(key)

        session = self.session_factory()
        try:
            query = select(Context).where(Context.run_id == run_id, Context.context_key == key)
            if version is None:
                query = query.where(Context.is_active.is_(True))
            else:
                query = query.where(Context.version == version)

            context = session.execute(query).scalar_one_or_none()
            if context is None:
                return None

            return StoredContext(
                context_id=context.id,
                key=context.context_key,
                version=context.version,
                value=self._load_value(context),
                summary=context.summary or "",
                size_bytes=context.size_bytes,
                storage_type=context.storage_type,
                metadata=context.metadata_ or {},
            )
        finally:
            session.close()

    def list_versions(self, context_id: UUID) -> List[ContextVersion]:
        """Version history of the (run, key) that ``context_id`` belongs to, oldest first."""
        session = self.session_factory()
        try:
            context = session.get(Context, context_id)
            if context is None:
                return []

            return list(
                session.execute(
                    select(ContextVersion)
                    .join(Context, ContextVersion.context_id == Context.id)
                    .where(
                        Context.run_id == context.run_id,
                        Context.context_key == context.context_key,
                    )
                    .order_by(ContextVersion.version)
                ).scalars()
            )
        finally:
            session.close()

    def list_contexts(self, run_id: UUID) -> List[Dict[str, Any]]:
        """Active contexts of a run, without their values."""
        session = self.session_factory()
        try:
            rows = session.execute(
                select(Context)
                .where(Context.run_id == run_id, Context.is_active.is_(True))
                .order_by(Context.context_key)
            ).scalars()

            return [
                {
                    "context_id": row.id,
                    "key": row.context_key,
                    "version": row.version,
                    "summary": row.summary,
                    "size_bytes": row.size_bytes,
                    "storage_type": row.storage_type,
                    "updated_at": row.updated_at,
                }
                for row in rows
            ]
        finally:
            session.close()
