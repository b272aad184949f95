import time
from typing import List, Optional, Set

from loguru import logger
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from pageindex.monitoring.metrics_server import ALIAS_FALLBACKS
from pageindex.storage.errors import ConflictError, QueryError, translate_errors


ALIASES_COLLECTION = "_aliases"


class AliasManager:
    """
    Maps a logical collection name to the physical generations behind it.

    An alias that has no binding resolves to itself, so callers can use one
    name whether or not aliasing is in use.
    """

    def __init__(self, database, collection_name: str = ALIASES_COLLECTION):
        self.database = database
        self.collection = database[collection_name]

    # -------------------------------------------------------
    # Lookup
    # -------------------------------------------------------

    async def _bindings(self, alias: str) -> list[dict]:
        cursor = self.collection.find({"alias": alias}).sort("boundAt", DESCENDING)
        return await cursor.to_list(length=None)

    async def _safe_bindings(self, alias: str) -> list[dict]:
        try:
            return await self._bindings(alias)
        except PyMongoError as e:
            logger.warning(f"Alias lookup for {alias} failed, using it as a physical name: {e}")
            return []

    async def generations(self, alias: str) -> List[str]:
        """Bound generations, most recently bound first."""
        bindings = await self._safe_bindings(alias)
        if not bindings:
            ALIAS_FALLBACKS.inc()
            return [alias]
        return [binding["index"] for binding in bindings]

    async def resolve(self, alias: str) -> Set[str]:
        return set(await self.generations(alias))

    async def write_target(self, alias: str) -> str:
        """
        The most recently bound generation receives writes.

        Only a missing binding falls back to the alias name; a failed lookup
        raises instead.
        """
        with translate_errors(f"lookup alias {alias}"):
            bindings = await self._bindings(alias)
        if not bindings:
            ALIAS_FALLBACKS.inc()
            return alias
        return bindings[0]["index"]

    async def is_bound(self, alias: str) -> bool:
        with translate_errors(f"lookup alias {alias}"):
            return await self.collection.count_documents({"alias": alias}) > 0

    # -------------------------------------------------------
    # Binding
    # -------------------------------------------------------

    async def bind(self, alias: str, physical: str) -> None:
        if alias == physical:
            raise QueryError(f"alias {alias} cannot point at itself")

        with translate_errors(f"bind {alias} -> {physical}"):
            if alias in await self.database.list_collection_names():
                raise ConflictError(f"{alias} is already a physical generation")

            await self.collection.update_one(
                {"_id": f"{alias}/{physical}"},
                {"$set": {"alias": alias, "index": physical, "boundAt": time.time_ns()}},
                upsert=True,
            )
        logger.info(f"Bound alias {alias} -> {physical}")

    async def unbind(self, alias: str, physical: Optional[str] = None) -> int:
        """Remove the binding to ``physical``, or every binding of the alias."""
        with translate_errors(f"unbind {alias}"):
            if physical is None:
                result = await self.collection.delete_many({"alias": alias})
            else:
                result = await self.collection.delete_one({"_id": f"{alias}/{physical}"})

        logger.info(f"Unbound alias {alias} ({result.deleted_count} binding(s) removed)")
        return result.deleted_count

    async def cutover(self, alias: str, physical: str) -> Set[str]:
        """
        Point ``alias`` at ``physical`` only.

        The new binding is added before the old ones are removed: readers may
        briefly see both generations, never neither.
        """
        with translate_errors(f"lookup alias {alias}"):
            previous = {binding["index"] for binding in await self._bindings(alias)}

        await self.bind(alias, physical)
        for old in sorted(previous - {physical}):
            await self.unbind(alias, old)

        logger.info(f"Alias {alias} cut over to {physical} (previous: {sorted(previous) or 'none'})")
        return previous - {physical}
