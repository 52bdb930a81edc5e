from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass
from typing import Any, Protocol

from visitrack.core.errors import EnrichmentUnavailable
from visitrack.core.logging import get_logger


@dataclass(frozen=True, slots=True)
class EnrichmentFacts:
    """
    Geo and device facts derived from (ip, user_agent). Every field may be None:
    unresolvable inputs are a normal outcome, not a failure.
    """

    country: str | None = None
    city: str | None = None
    region: str | None = None
    timezone: str | None = None
    device: str | None = None
    os: str | None = None
    browser: str | None = None
    browser_version: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Any) -> EnrichmentFacts:
        if isinstance(data, EnrichmentFacts):
            return data
        if not data:
            return EMPTY_FACTS
        return cls(**{k: _clean(data.get(k)) for k in cls.__dataclass_fields__})


EMPTY_FACTS = EnrichmentFacts()


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


class Enricher(Protocol):
    def enrich(self, ip: str | None, user_agent: str | None) -> EnrichmentFacts: ...


class NullEnricher:
    """Resolves nothing. Used when no geo/UA collaborator is wired in."""

    def enrich(self, ip: str | None, user_agent: str | None) -> EnrichmentFacts:
        return EMPTY_FACTS


class EnrichmentService:
    """
    Guards the enrichment collaborator: bounded wait, failures degrade to empty
    facts with a warning. Ingestion never fails because of enrichment.
    """

    def __init__(
        self,
        enricher: Enricher | None = None,
        *,
        timeout_seconds: float = 2.0,
        max_workers: int = 4,
    ) -> None:
        self.enricher: Enricher = enricher or NullEnricher()
        self.timeout_seconds = float(timeout_seconds)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="enrich")
        self._logger = get_logger(__name__)

    def enrich(self, ip: str | None, user_agent: str | None) -> EnrichmentFacts:
        if not ip and not user_agent:
            return EMPTY_FACTS
        try:
            return self._call(ip, user_agent)
        except EnrichmentUnavailable as e:
            self._logger.warning(
                "enrichment_unavailable",
                extra={"feature": "enrichment", "reason": str(e)},
            )
            return EMPTY_FACTS

    def _call(self, ip: str | None, user_agent: str | None) -> EnrichmentFacts:
        future = self._pool.submit(self.enricher.enrich, ip, user_agent)
        try:
            return EnrichmentFacts.from_mapping(future.result(timeout=self.timeout_seconds))
        except FutureTimeout as e:
            future.cancel()
            raise EnrichmentUnavailable(
                f"enrichment timed out after {self.timeout_seconds}s"
            ) from e
        except EnrichmentUnavailable:
            raise
        except Exception as e:  # noqa: BLE001 - any collaborator failure degrades
            raise EnrichmentUnavailable(f"enrichment failed: {e!r}") from e

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
