"""Field typing for a physical generation of the page index.

The mapping is plain data: nested dicts built by the small helpers below.
It is written once when a generation is created and translated into the
engine's terms there: a ``$jsonSchema`` validator for the hard constraints
and a set of indexes for exact-match, rank and full-text access.
"""

from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Tuple

from loguru import logger
from pymongo import ASCENDING, DESCENDING, TEXT, IndexModel
from pymongo.errors import OperationFailure

from pageindex.models.page_record import MAX_KEYWORD_LENGTH, SCHEMA_VERSION, CrawlerStatus, now_ms
from pageindex.storage.errors import ConflictError, QueryError, translate_errors


MAX_URL_LENGTH = 2048

GENERATIONS_COLLECTION = "_generations"

# keyword fields that get a plain ascending index
EXACT_INDEXED = ("address.url", "crawlerStatus", "inferredData.domainName")

# server error code for "collection already exists"
NAMESPACE_EXISTS = 48

Mapping = Dict[str, Any]


# -------------------------------------------------------
# field helpers
# -------------------------------------------------------

def text(weight: int = 1) -> Mapping:
    return {"type": "text", "weight": weight}


def keyword(ignore_above: int = MAX_KEYWORD_LENGTH, *, required: bool = False, enum: Optional[List[str]] = None) -> Mapping:
    field: Mapping = {"type": "keyword", "ignore_above": ignore_above}
    if required:
        field["required"] = True
    if enum is not None:
        field["enum"] = list(enum)
    return field


def rank_feature(*, non_negative: bool = False) -> Mapping:
    field: Mapping = {
        "type": "double",
        "fields": {"rankFeature": {"type": "rank_feature", "positive_score_impact": True}},
    }
    if non_negative:
        field["minimum"] = 0
    return field


def long_() -> Mapping:
    return {"type": "long"}


def integer() -> Mapping:
    return {"type": "integer"}


def object_of(**properties: Mapping) -> Mapping:
    return {"type": "object", "properties": properties}


def nested_of(**properties: Mapping) -> Mapping:
    return {"type": "nested", "properties": properties}


def _link(text_weight: int, target: str) -> Mapping:
    return nested_of(**{"text": text(text_weight), target: keyword(MAX_URL_LENGTH)})


def page_mapping() -> Mapping:
    return {
        "properties": {
            "schemaVersion": integer(),
            "address": object_of(
                url=keyword(MAX_URL_LENGTH, required=True),
                urlAsText=text(2),
                hostName=keyword(),
            ),
            "metadata": object_of(
                title=text(10),
                description=text(4),
                openGraphImgURL=keyword(MAX_URL_LENGTH),
                openGraphTitle=text(4),
                openGraphDescription=text(2),
                type=keyword(),
                tags=keyword(),
            ),
            "body": object_of(
                headings=object_of(
                    h1=text(8),
                    h2=text(6),
                    h3=text(4),
                    h4=text(3),
                    h5=text(2),
                    h6=text(2),
                ),
                boldText=text(2),
                article=text(1),
                links=object_of(
                    internal=_link(3, "href"),
                    external=_link(3, "href"),
                ),
            ),
            "inferredData": object_of(
                backLinks=_link(3, "source"),
                ranks=object_of(
                    pagerank=rank_feature(),
                    smartRank=rank_feature(non_negative=True),
                ),
                domainName=keyword(),
            ),
            "crawlerStatus": keyword(enum=[status.value for status in CrawlerStatus]),
            "crawlerTimestamp": long_(),
        }
    }


def build_schema(number_of_shards: int = 1, number_of_replicas: int = 0, mapping: Optional[Mapping] = None) -> Mapping:
    if number_of_shards < 1:
        raise QueryError("number_of_shards must be at least 1")
    if number_of_replicas < 0:
        raise QueryError("number_of_replicas cannot be negative")
    return {
        "settings": {
            "numberOfShards": number_of_shards,
            "numberOfReplicas": number_of_replicas,
        },
        "mappings": mapping if mapping is not None else page_mapping(),
    }


# -------------------------------------------------------
# mapping introspection
# -------------------------------------------------------

def _walk(properties: Mapping, prefix: str = "") -> Iterator[Tuple[str, Mapping]]:
    for name, field in properties.items():
        path = f"{prefix}{name}"
        yield path, field
        if field.get("type") in ("object", "nested"):
            yield from _walk(field["properties"], f"{path}.")


def _field_type(field: Mapping) -> str:
    sub_fields = field.get("fields") or {}
    if any(sub.get("type") == "rank_feature" for sub in sub_fields.values()):
        return "rank_feature"
    return field["type"]


def field_paths(mapping: Mapping) -> Dict[str, str]:
    """Every dotted path the mapping declares, with its field type."""
    return {path: _field_type(field) for path, field in _walk(mapping["properties"])}


def _constraints(field: Mapping) -> Optional[Mapping]:
    kind = _field_type(field)
    if kind == "object":
        properties = {}
        required = []
        for name, sub in field["properties"].items():
            rule = _constraints(sub)
            if rule is not None:
                properties[name] = rule
            if sub.get("required") or (rule is not None and rule.get("required")):
                required.append(name)
        if not properties and not required:
            return None
        schema: Mapping = {"bsonType": "object", "properties": properties}
        if required:
            schema["required"] = required
        return schema
    if kind == "rank_feature":
        schema = {"bsonType": ["double", "int", "long"]}
        if "minimum" in field:
            schema["minimum"] = field["minimum"]
        return schema
    if kind == "keyword" and field.get("enum"):
        return {"enum": field["enum"]}
    if kind == "keyword" and field.get("required"):
        return {"bsonType": "string", "minLength": 1}
    return None


def to_validator(mapping: Mapping) -> Mapping:
    """Translate the hard constraints of a mapping into a ``$jsonSchema`` validator."""
    root = _constraints({"type": "object", "properties": mapping["properties"]}) or {"bsonType": "object"}
    return {"$jsonSchema": root}


def index_models(mapping: Mapping) -> List[IndexModel]:
    paths = field_paths(mapping)
    models = [
        IndexModel([(path, ASCENDING)], name=f"{path}_exact")
        for path, kind in paths.items()
        if kind == "keyword" and path in EXACT_INDEXED
    ]
    for path, kind in paths.items():
        if kind == "rank_feature":
            models.append(
                IndexModel([("crawlerStatus", ASCENDING), (path, DESCENDING)], name=f"status_{path}_rank")
            )

    fields = dict(_walk(mapping["properties"]))
    weights = {path: fields[path]["weight"] for path, kind in paths.items() if kind == "text"}
    if weights:
        models.append(
            IndexModel(
                [(path, TEXT) for path in weights],
                name="full_text",
                weights=weights,
                default_language="none",
            )
        )
    return models


# -------------------------------------------------------
# generations
# -------------------------------------------------------

class SchemaBuilder:
    """Creates and drops physical generations with their field typing."""

    def __init__(self, database):
        self.database = database

    async def create_generation(
        self,
        name: str,
        *,
        number_of_shards: int = 1,
        number_of_replicas: int = 0,
        mapping: Optional[Mapping] = None,
    ) -> Mapping:
        if not name or name.startswith("_"):
            raise QueryError(f"invalid generation name {name!r}")

        schema = build_schema(number_of_shards, number_of_replicas, mapping)
        mappings = schema["mappings"]

        with translate_errors(f"create generation {name}"):
            try:
                collection = await self.database.create_collection(
                    name,
                    validator=to_validator(mappings),
                    validationLevel="strict",
                    validationAction="error",
                )
            except OperationFailure as exc:
                if exc.code == NAMESPACE_EXISTS:
                    raise ConflictError(f"generation {name} already exists") from exc
                raise

            await collection.create_indexes(index_models(mappings))

            # settings are fixed for the lifetime of the generation
            await self.database[GENERATIONS_COLLECTION].replace_one(
                {"_id": name},
                {
                    "_id": name,
                    "settings": schema["settings"],
                    "mappings": mappings,
                    "schemaVersion": SCHEMA_VERSION,
                    "createdAt": now_ms(),
                },
                upsert=True,
            )

        logger.info(
            f"Created generation {name} "
            f"(shards={number_of_shards}, replicas={number_of_replicas})"
        )
        return schema

    async def drop_generation(self, name: str) -> None:
        with translate_errors(f"drop generation {name}"):
            await self.database.drop_collection(name)
            await self.database[GENERATIONS_COLLECTION].delete_one({"_id": name})
        logger.info(f"Dropped generation {name}")

    async def generation_exists(self, name: str) -> bool:
        with translate_errors("list generations"):
            names = await self.database.list_collection_names()
        return name in names

    async def generation_settings(self, name: str) -> Optional[Mapping]:
        with translate_errors(f"read generation {name}"):
            entry = await self.database[GENERATIONS_COLLECTION].find_one({"_id": name})
        return entry["settings"] if entry else None
