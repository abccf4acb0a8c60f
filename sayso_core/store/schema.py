"""
SQLite schema for the shared Sayso store.

Times are Unix milliseconds. Booleans are 0/1 integers.

Invariants:
    - Owned resources cascade from their owner; audit references
      (created_by, uploaded_by, viewer ids) are SET NULL
    - ux_business_images_primary allows at most one primary image per business
    - review_helpful_votes has a composite primary key, one vote per user per review
    - notifications are unique per (recipient_id, kind, entity_id)
    - aggregate_state is written only by the derived-state engine
    - failed_reactions holds one row per event whose reaction has not yet
      succeeded; the reactor deletes it once every handler has applied

How to change safely:
    - Only add columns or tables; bump SCHEMA_VERSION
    - Every statement must be idempotent (IF NOT EXISTS)
"""

from __future__ import annotations

SCHEMA_VERSION = 2

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS identities (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
    display_name TEXT,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS account_identities (
    id TEXT PRIMARY KEY,
    auth_user_id TEXT NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    email TEXT NOT NULL,
    account_type TEXT NOT NULL CHECK (account_type IN ('personal', 'business')),
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE (email, account_type)
);

CREATE TABLE IF NOT EXISTS profiles (
    user_id TEXT PRIMARY KEY REFERENCES identities(id) ON DELETE CASCADE,
    display_name TEXT,
    username TEXT,
    email TEXT,
    account_type TEXT CHECK (account_type IS NULL OR account_type IN ('personal', 'business')),
    account_identity_id TEXT REFERENCES account_identities(id) ON DELETE SET NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS businesses (
    id TEXT PRIMARY KEY,
    owner_id TEXT REFERENCES identities(id) ON DELETE SET NULL,
    name TEXT NOT NULL,
    description TEXT,
    address TEXT,
    phone TEXT,
    email TEXT,
    website TEXT,
    image_url TEXT,
    price_range TEXT,
    verified INTEGER NOT NULL DEFAULT 0,
    slug TEXT,
    internal_notes TEXT,
    is_hidden INTEGER NOT NULL DEFAULT 0,
    is_system INTEGER NOT NULL DEFAULT 0,
    created_by TEXT REFERENCES identities(id) ON DELETE SET NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_businesses_owner ON businesses(owner_id);

CREATE TABLE IF NOT EXISTS business_team_members (
    business_id TEXT NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    role TEXT NOT NULL DEFAULT 'manager' CHECK (role IN ('owner', 'manager', 'admin')),
    created_at INTEGER NOT NULL,
    PRIMARY KEY (business_id, user_id)
);

CREATE INDEX IF NOT EXISTS idx_team_members_user ON business_team_members(user_id);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT,
    starts_at INTEGER,
    owner_id TEXT REFERENCES identities(id) ON DELETE SET NULL,
    created_by TEXT REFERENCES identities(id) ON DELETE SET NULL,
    is_hidden INTEGER NOT NULL DEFAULT 0,
    is_system INTEGER NOT NULL DEFAULT 0,
    source TEXT,
    external_id TEXT,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE (source, external_id)
);

CREATE TABLE IF NOT EXISTS reviews (
    id TEXT PRIMARY KEY,
    target_type TEXT NOT NULL CHECK (target_type IN ('business', 'event')),
    target_id TEXT NOT NULL,
    user_id TEXT REFERENCES identities(id) ON DELETE CASCADE,
    guest_name TEXT,
    guest_email TEXT,
    guest_ip TEXT,
    rating INTEGER NOT NULL CHECK (rating BETWEEN 1 AND 5),
    title TEXT,
    content TEXT NOT NULL,
    helpful_count INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    CHECK (user_id IS NOT NULL OR guest_name IS NOT NULL)
);

CREATE INDEX IF NOT EXISTS idx_reviews_target ON reviews(target_type, target_id);

CREATE TABLE IF NOT EXISTS review_replies (
    id TEXT PRIMARY KEY,
    review_id TEXT NOT NULL REFERENCES reviews(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS business_images (
    id TEXT PRIMARY KEY,
    business_id TEXT NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
    url TEXT NOT NULL,
    storage_path TEXT,
    type TEXT NOT NULL DEFAULT 'gallery' CHECK (type IN ('cover', 'logo', 'gallery')),
    sort_order INTEGER NOT NULL DEFAULT 0,
    is_primary INTEGER NOT NULL DEFAULT 0,
    uploaded_by TEXT REFERENCES identities(id) ON DELETE SET NULL,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_business_images_business
    ON business_images(business_id, sort_order);

CREATE UNIQUE INDEX IF NOT EXISTS ux_business_images_primary
    ON business_images(business_id) WHERE is_primary = 1;

CREATE TABLE IF NOT EXISTS review_helpful_votes (
    review_id TEXT NOT NULL REFERENCES reviews(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    created_at INTEGER NOT NULL,
    PRIMARY KEY (review_id, user_id)
);

CREATE TABLE IF NOT EXISTS user_badges (
    user_id TEXT NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    badge_id TEXT NOT NULL,
    badge_name TEXT NOT NULL,
    awarded_at INTEGER NOT NULL,
    PRIMARY KEY (user_id, badge_id)
);

CREATE TABLE IF NOT EXISTS profile_views (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    business_id TEXT NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
    viewer_id TEXT REFERENCES identities(id) ON DELETE SET NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS cta_clicks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    business_id TEXT NOT NULL REFERENCES businesses(id) ON DELETE CASCADE,
    user_id TEXT REFERENCES identities(id) ON DELETE SET NULL,
    cta_type TEXT NOT NULL,
    created_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS aggregate_state (
    target_type TEXT NOT NULL,
    target_id TEXT NOT NULL,
    review_count INTEGER NOT NULL DEFAULT 0,
    average_rating REAL NOT NULL DEFAULT 0,
    rating_distribution TEXT NOT NULL DEFAULT '{}',
    helpful_votes INTEGER NOT NULL DEFAULT 0,
    last_activity_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (target_type, target_id)
);

CREATE TABLE IF NOT EXISTS notifications (
    id TEXT PRIMARY KEY,
    recipient_id TEXT NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    kind TEXT NOT NULL CHECK (
        kind IN ('review', 'business', 'user', 'highlyRated', 'comment_reply', 'badge')
    ),
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    link TEXT,
    entity_id TEXT,
    read INTEGER NOT NULL DEFAULT 0,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_notifications_entity
    ON notifications(recipient_id, kind, entity_id) WHERE entity_id IS NOT NULL;

CREATE INDEX IF NOT EXISTS idx_notifications_recipient
    ON notifications(recipient_id, created_at DESC);

CREATE TABLE IF NOT EXISTS auth_rate_limits (
    id TEXT PRIMARY KEY,
    identifier TEXT NOT NULL,
    attempt_type TEXT NOT NULL,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    blocked_until INTEGER,
    last_attempt_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    UNIQUE (identifier, attempt_type)
);

CREATE TABLE IF NOT EXISTS applied_reactions (
    event_id TEXT NOT NULL,
    handler TEXT NOT NULL,
    applied_at INTEGER NOT NULL,
    PRIMARY KEY (event_id, handler)
);

CREATE TABLE IF NOT EXISTS failed_reactions (
    event_id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    event_json TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 1,
    last_error TEXT,
    first_failed_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_failed_reactions_updated
    ON failed_reactions(updated_at);
"""
