from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    generate_latest,
    Counter,
    Histogram,
)

# -------------------------
# Store operations
# -------------------------

STORE_OPERATIONS = Counter(
    "pageindex_store_operations_total",
    "Document store operations",
    ["operation", "outcome"],
)

STORE_LATENCY = Histogram(
    "pageindex_store_latency_seconds",
    "Time spent in a document store operation",
    ["operation"],
)

# -------------------------
# Bulk writes
# -------------------------

BULK_ITEMS = Counter(
    "pageindex_bulk_items_total",
    "Bulk upsert items by outcome",
    ["outcome"],
)

# -------------------------
# Backlinks / aliases
# -------------------------

BACKLINK_MERGES = Counter(
    "pageindex_backlink_merges_total",
    "Backlink merges by outcome",
    ["outcome"],
)

ALIAS_FALLBACKS = Counter(
    "pageindex_alias_fallbacks_total",
    "Alias lookups that fell back to the alias name itself",
)


# -------------------------
# /metrics endpoint
# -------------------------

async def metrics_handler(request):
    data = generate_latest()

    # aiohttp rejects a charset inside content_type
    ctype = CONTENT_TYPE_LATEST.split(";")[0]

    return web.Response(
        body=data,
        content_type=ctype
    )


async def start_metrics_server(port=8000, host="0.0.0.0"):
    app = web.Application()
    app.router.add_get("/metrics", metrics_handler)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    return runner, site
