"""SQLite database schema definitions."""

SCHEMA_SQL = """
-- Markets table (natural key: condition_id)
CREATE TABLE IF NOT EXISTS markets (
    id TEXT PRIMARY KEY,
    condition_id TEXT NOT NULL UNIQUE,
    question TEXT NOT NULL,
    description TEXT,
    slug TEXT NOT NULL DEFAULT '',
    start_date TEXT,
    end_date TEXT,
    outcomes TEXT NOT NULL DEFAULT '[]',
    volume REAL,
    liquidity REAL,
    active INTEGER NOT NULL DEFAULT 1,
    closed INTEGER NOT NULL DEFAULT 0,
    archived INTEGER NOT NULL DEFAULT 0,
    category TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    image_url TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_markets_active ON markets(active, closed);
CREATE INDEX IF NOT EXISTS idx_markets_category ON markets(category);
CREATE INDEX IF NOT EXISTS idx_markets_end_date ON markets(end_date DESC);

-- Append-only price history; one point per market per minute
CREATE TABLE IF NOT EXISTS market_price_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    market_id TEXT NOT NULL,
    condition_id TEXT NOT NULL,
    price_yes REAL NOT NULL,
    price_no REAL NOT NULL,
    volume REAL,
    liquidity REAL,
    timestamp TEXT NOT NULL,
    minute_bucket TEXT NOT NULL,
    UNIQUE (market_id, minute_bucket),
    FOREIGN KEY (market_id) REFERENCES markets(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_price_history_market_time
    ON market_price_history(market_id, timestamp);
CREATE INDEX IF NOT EXISTS idx_price_history_time
    ON market_price_history(timestamp);

-- Newsletter subscriptions
CREATE TABLE IF NOT EXISTS breaking_newsletter_subscriptions (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    active INTEGER NOT NULL DEFAULT 1,
    frequency TEXT NOT NULL DEFAULT 'daily' CHECK (frequency IN ('daily', 'weekly')),
    created_at TEXT NOT NULL,
    last_sent_at TEXT,
    unsubscribed_at TEXT,
    unsubscribe_token TEXT UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_newsletter_active
    ON breaking_newsletter_subscriptions(active, last_sent_at);
CREATE INDEX IF NOT EXISTS idx_newsletter_frequency
    ON breaking_newsletter_subscriptions(frequency, active);

-- Metadata table for tracking sync state
CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

MARKET_COLUMNS = (
    "condition_id",
    "question",
    "description",
    "slug",
    "start_date",
    "end_date",
    "outcomes",
    "volume",
    "liquidity",
    "active",
    "closed",
    "archived",
    "category",
    "tags",
    "image_url",
)

UPSERT_MARKET_SQL = f"""
INSERT INTO markets (id, {", ".join(MARKET_COLUMNS)}, created_at, updated_at)
VALUES (?, {", ".join("?" for _ in MARKET_COLUMNS)}, ?, ?)
ON CONFLICT(condition_id) DO UPDATE SET
    {", ".join(f"{col} = excluded.{col}" for col in MARKET_COLUMNS if col != "condition_id")},
    updated_at = excluded.updated_at
"""

INSERT_PRICE_POINT_SQL = """
INSERT INTO market_price_history (
    market_id, condition_id, price_yes, price_no, volume, liquidity, timestamp, minute_bucket
)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

DUE_SUBSCRIBERS_SQL = """
SELECT * FROM breaking_newsletter_subscriptions
WHERE active = 1
  AND frequency = ?
  AND (last_sent_at IS NULL OR last_sent_at < ?)
ORDER BY created_at ASC
"""
