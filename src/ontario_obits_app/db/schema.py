#!src/ontario_obits_app/db/schema.py
from __future__ import annotations

SCHEMA = r"""
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS obituaries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  provenance_hash TEXT NOT NULL,

  name TEXT NOT NULL DEFAULT '',
  date_of_birth TEXT,
  date_of_death TEXT,
  age INTEGER,
  funeral_home TEXT,
  location TEXT,
  city_normalized TEXT,
  description TEXT,
  image_url TEXT,
  source_url TEXT,
  source_domain TEXT,
  source_type TEXT,

  status TEXT NOT NULL DEFAULT 'pending'
    CHECK (status IN ('pending', 'published')),
  ai_description TEXT,
  ai_description_hash TEXT,
  published_at TEXT,

  audit_status TEXT,
  audit_flags TEXT,
  last_audit_at TEXT,
  last_audited_hash TEXT,
  audit_requeue_count INTEGER NOT NULL DEFAULT 0,

  rewrite_requested_at TEXT,
  rewrite_request_reason TEXT,
  last_rewrite_error_at TEXT,

  suppressed_at TEXT,
  suppressed_reason TEXT,

  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now')),

  CHECK (status <> 'published' OR length(coalesce(ai_description, '')) > 0)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_obituaries_provenance_hash
ON obituaries(provenance_hash);

CREATE INDEX IF NOT EXISTS idx_obituaries_status_created
ON obituaries(status, created_at);

CREATE INDEX IF NOT EXISTS idx_obituaries_suppressed_at
ON obituaries(suppressed_at);

CREATE TABLE IF NOT EXISTS sources (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  domain TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL DEFAULT '',
  base_url TEXT NOT NULL DEFAULT '',
  adapter_type TEXT NOT NULL DEFAULT 'generic_html',
  config TEXT NOT NULL DEFAULT '{}',
  city TEXT NOT NULL DEFAULT '',
  region TEXT NOT NULL DEFAULT '',
  province TEXT NOT NULL DEFAULT 'ON',
  enabled INTEGER NOT NULL DEFAULT 1,
  image_allowlisted INTEGER NOT NULL DEFAULT 0,
  max_pages_per_run INTEGER NOT NULL DEFAULT 5,
  min_request_interval REAL NOT NULL DEFAULT 2.0,

  consecutive_failures INTEGER NOT NULL DEFAULT 0,
  circuit_open_until TEXT,
  last_success TEXT,
  last_failure TEXT,
  last_failure_reason TEXT,
  total_collected INTEGER NOT NULL DEFAULT 0,

  created_at TEXT DEFAULT (datetime('now')),
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS suppressions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  obituary_id INTEGER,
  provenance_hash TEXT NOT NULL,
  name TEXT,
  date_of_death TEXT,
  reason TEXT NOT NULL DEFAULT 'admin_action',
  notes TEXT,
  do_not_republish INTEGER NOT NULL DEFAULT 1,
  created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_suppressions_hash
ON suppressions(provenance_hash, do_not_republish);

CREATE TABLE IF NOT EXISTS kv_store (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  version INTEGER NOT NULL DEFAULT 0,
  expires_at REAL,
  updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS health_counters (
  code TEXT PRIMARY KEY,
  count INTEGER NOT NULL DEFAULT 0,
  window_expires_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS health_marks (
  name TEXT PRIMARY KEY,
  at REAL NOT NULL,
  detail TEXT
);

CREATE TABLE IF NOT EXISTS alert_dedupe (
  dedupe_key TEXT PRIMARY KEY,
  last_seen REAL NOT NULL,
  hits INTEGER NOT NULL DEFAULT 1
);
"""
