"""Batch lookups of identities in LDAP."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from structlog.stdlib import BoundLogger

from ..attributes import merge_attributes, process_entry
from ..cache import DisplayNameCache
from ..config import LookupConfig
from ..filters import build_filter
from ..lifecycle import ShutdownManager
from ..models.lookup import (
    AttributeOption,
    ErrorDetail,
    Identity,
    LookupResult,
)
from ..storage.ldap import LDAPStorage

__all__ = ["LookupService"]


class LookupService:
    """Look up batches of identities in LDAP.

    Each identity is looked up independently, with a bounded number of
    lookups in flight at once. A failure looking up one identity is recorded
    in the result for that identity and does not affect the others.

    Parameters
    ----------
    config
        Lookup configuration for this batch.
    ldap
        The underlying LDAP query layer.
    display_name_cache
        Cache of the parsed display name mapping.
    shutdown
        Shutdown manager, consulted to detect an unreachable LDAP server.
    logger
        Logger to use.
    """

    def __init__(
        self,
        *,
        config: LookupConfig,
        ldap: LDAPStorage,
        display_name_cache: DisplayNameCache,
        shutdown: ShutdownManager,
        logger: BoundLogger,
    ) -> None:
        self._config = config
        self._ldap = ldap
        self._display_name_cache = display_name_cache
        self._shutdown = shutdown
        self._logger = logger

    async def batch_lookup(
        self, identities: Iterable[Identity]
    ) -> list[LookupResult]:
        """Look up a batch of identities.

        Parameters
        ----------
        identities
            Identities to look up.

        Returns
        -------
        list of LookupResult
            One result per identity, in the same order as the input.

        Raises
        ------
        DirectoryUnavailableError
            Raised if the LDAP server is unreachable. The process is being
            shut down when this is raised.
        """
        if self._shutdown.error:
            raise self._shutdown.error
        display_names = await self._display_name_cache.get(
            self._config.display_name_mapping
        )
        summary = merge_attributes(
            self._config.summary_user_attributes,
            self._config.summary_custom_user_attributes,
            display_names,
        )
        details = merge_attributes(
            self._config.detailed_user_attributes,
            self._config.detailed_custom_user_attributes,
            display_names,
        )
        attributes = list(dict.fromkeys(a.value for a in summary + details))

        semaphore = asyncio.Semaphore(self._config.lookup_concurrency)

        async def lookup(identity: Identity) -> LookupResult:
            async with semaphore:
                return await self._lookup(
                    identity, summary, details, attributes
                )

        results = await asyncio.gather(*(lookup(i) for i in identities))
        self._logger.debug(
            "Finished batch lookup",
            count=len(results),
            found=sum(1 for r in results if r.found),
            failed=sum(1 for r in results if r.error),
        )
        if self._shutdown.error:
            raise self._shutdown.error
        return results

    async def _lookup(
        self,
        identity: Identity,
        summary: list[AttributeOption],
        details: list[AttributeOption],
        attributes: list[str],
    ) -> LookupResult:
        """Look up a single identity, capturing any error in the result."""
        logger = self._logger.bind(identity=identity.value)
        try:
            search = build_filter(identity.value, self._config)
            entry = await self._ldap.find_user(search, attributes)
            if entry is None:
                logger.debug("No LDAP entry found", ldap_search=search)
                return LookupResult(identity=identity, found=False)
            return LookupResult(
                identity=identity,
                found=True,
                summary=process_entry(entry, summary, self._config),
                details=process_entry(
                    entry, details, self._config, detail=True
                ),
            )
        except Exception as e:
            logger.error(
                "LDAP lookup failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return LookupResult(
                identity=identity, error=ErrorDetail.from_exception(e)
            )
