"""Realtime event catalog — which events each domain may emit.

Learn: Centralizing event names as constants prevents typos and makes it
easy to discover everything a client can subscribe to. A TypedEmitter is
built per domain from DOMAIN_EVENTS and refuses to publish or subscribe to
anything not listed here.
"""

# ─── Domains ───────────────────────────────────────────────

RECIPES = "recipes"
GROCERIES = "groceries"
CALENDAR = "calendar"
HOUSEHOLDS = "households"
CALDAV = "caldav"
RATINGS = "ratings"
STORES = "stores"

# ─── Recipe events (imports + AI enrichment report progress here) ──

RECIPE_CREATED = "created"
RECIPE_UPDATED = "updated"
RECIPE_DELETED = "deleted"
RECIPE_IMPORTED = "imported"
RECIPE_IMPORT_FAILED = "failed"
RECIPE_PROCESSING_TOAST = "processingToast"
RECIPE_AUTO_TAGGING_STARTED = "autoTaggingStarted"
RECIPE_AUTO_TAGGING_COMPLETED = "autoTaggingCompleted"
RECIPE_ALLERGY_DETECTION_STARTED = "allergyDetectionStarted"
RECIPE_ALLERGY_DETECTION_COMPLETED = "allergyDetectionCompleted"
RECIPE_NUTRITION_STARTED = "nutritionStarted"
RECIPE_NUTRITION_COMPLETED = "nutritionCompleted"

# ─── Shared CRUD events ────────────────────────────────────

CREATED = "created"
UPDATED = "updated"
DELETED = "deleted"

# ─── CalDAV sync ───────────────────────────────────────────

CALDAV_SYNC_STARTED = "syncStarted"
CALDAV_SYNC_COMPLETED = "syncCompleted"
CALDAV_SYNC_FAILED = "syncFailed"

# ─── Households ────────────────────────────────────────────

HOUSEHOLD_MEMBER_JOINED = "memberJoined"
HOUSEHOLD_MEMBER_LEFT = "memberLeft"


DOMAIN_EVENTS: dict[str, frozenset[str]] = {
    RECIPES: frozenset(
        {
            RECIPE_CREATED,
            RECIPE_UPDATED,
            RECIPE_DELETED,
            RECIPE_IMPORTED,
            RECIPE_IMPORT_FAILED,
            RECIPE_PROCESSING_TOAST,
            RECIPE_AUTO_TAGGING_STARTED,
            RECIPE_AUTO_TAGGING_COMPLETED,
            RECIPE_ALLERGY_DETECTION_STARTED,
            RECIPE_ALLERGY_DETECTION_COMPLETED,
            RECIPE_NUTRITION_STARTED,
            RECIPE_NUTRITION_COMPLETED,
        }
    ),
    GROCERIES: frozenset({CREATED, UPDATED, DELETED}),
    CALENDAR: frozenset({CREATED, UPDATED, DELETED}),
    RATINGS: frozenset({UPDATED}),
    STORES: frozenset({CREATED, UPDATED, DELETED}),
    HOUSEHOLDS: frozenset({UPDATED, HOUSEHOLD_MEMBER_JOINED, HOUSEHOLD_MEMBER_LEFT}),
    CALDAV: frozenset({CALDAV_SYNC_STARTED, CALDAV_SYNC_COMPLETED, CALDAV_SYNC_FAILED}),
}
