"""FTS5 lexical index over ``chunks.content_for_search``.

The index is an external-content FTS5 table kept in sync by triggers, so the
lexical representation is rebuilt whenever a chunk's search text changes.
The tokenizer is chosen from the deployment's search language.
"""

from __future__ import annotations

import re
import sqlite3

FTS_TABLE = "chunks_fts"

# FTS5 ships a Porter stemmer for English only; other languages get
# diacritic-folding unicode tokenization without stemming.
_TOKENIZERS: dict[str, str] = {
    "english": "porter unicode61 remove_diacritics 2",
}
_DEFAULT_TOKENIZER = "unicode61 remove_diacritics 2"

_TERM_RE = re.compile(r"\w+", re.UNICODE)


def tokenizer_for(language: str) -> str:
    """Return the FTS5 tokenize= argument for *language*."""
    return _TOKENIZERS.get(language.lower(), _DEFAULT_TOKENIZER)


def build_match_query(text: str) -> str:
    """Turn free text into an FTS5 MATCH expression.

    Every word becomes a quoted term and terms are OR-ed, so punctuation never
    reaches the FTS5 parser and any matching term makes a candidate.
    Returns an empty string when *text* has no word characters.
    """
    terms = _TERM_RE.findall(text)
    return " OR ".join(f'"{t}"' for t in terms)


def ensure_fts_table(conn: sqlite3.Connection, language: str) -> str:
    """Create the FTS5 table and its sync triggers if missing. Returns the table name."""
    existing = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (FTS_TABLE,)
    ).fetchone()
    if existing is not None:
        return FTS_TABLE

    tokenize = tokenizer_for(language)
    conn.executescript(
        f"""
        CREATE VIRTUAL TABLE {FTS_TABLE} USING fts5(
            content_for_search,
            content='chunks',
            content_rowid='id',
            tokenize='{tokenize}'
        );

        CREATE TRIGGER IF NOT EXISTS chunks_fts_ai AFTER INSERT ON chunks BEGIN
            INSERT INTO {FTS_TABLE}(rowid, content_for_search)
            VALUES (new.id, new.content_for_search);
        END;

        CREATE TRIGGER IF NOT EXISTS chunks_fts_ad AFTER DELETE ON chunks BEGIN
            INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content_for_search)
            VALUES ('delete', old.id, old.content_for_search);
        END;

        CREATE TRIGGER IF NOT EXISTS chunks_fts_au AFTER UPDATE OF context, content ON chunks BEGIN
            INSERT INTO {FTS_TABLE}({FTS_TABLE}, rowid, content_for_search)
            VALUES ('delete', old.id, old.content_for_search);
            INSERT INTO {FTS_TABLE}(rowid, content_for_search)
            VALUES (new.id, new.content_for_search);
        END;
        """
    )
    return FTS_TABLE
