"""docfuse configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (DOCFUSE_EMBEDDING_MODEL, DOCFUSE_ENRICHMENT_MODEL,
                             DOCFUSE_SEARCH_LANGUAGE, DOCFUSE_LOG_LEVEL)
  3. Per-project docfuse.yaml
  4. Global ~/.docfuse/config.yaml  (model defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().

The embedding model and the search language are deployment-wide: the store
records the values it was built with and refuses to open with different ones
(see docfuse.db.schema.bind_index_settings).
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".docfuse"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "docfuse.yaml"

# Matches api_key, api-key, api_secret, *_token, token, *_secret, secret,
# password, passwd, credential(s). Does not match max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["embedding", "enrichment", "chunking", "retrieval", "search", "ingestion", "logging"]
)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (docfuse.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 20
    pace_seconds: float = 0.1
    timeout_seconds: float = 60.0
    num_retries: int = 3


@dataclass
class EnrichmentCfg:
    """Contextual enrichment configuration (docfuse.yaml: enrichment:).

    Attributes:
        max_fallback_ratio: Fail the run when more than this fraction of chunks
            lost their context. None disables the check.
    """

    model: str = "openai/gpt-4o-mini"
    concurrency: int = 5
    excerpt_chars: int = 8_000
    max_tokens: int = 150
    timeout_seconds: float = 60.0
    num_retries: int = 3
    max_fallback_ratio: float | None = None


@dataclass
class ChunkingCfg:
    """Segmenter configuration in characters (docfuse.yaml: chunking:)."""

    target_size: int = 1_000
    overlap: int = 200
    min_chunk_length: int = 50


@dataclass
class RetrievalCfg:
    """Hybrid retrieval configuration (docfuse.yaml: retrieval:)."""

    max_results: int = 10
    vector_weight: float = 0.7
    bm25_weight: float = 0.3
    similarity_floor: float = 0.5
    hybrid: bool = True


@dataclass
class SearchCfg:
    """Lexical analyzer language, shared by indexing and querying."""

    language: str = "english"


@dataclass
class IngestionCfg:
    """Whole-run limits (docfuse.yaml: ingestion:)."""

    run_timeout_seconds: float | None = None


@dataclass
class LoggingCfg:
    level: str = "INFO"
    json: bool = False


@dataclass
class DocfuseConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    enrichment: EnrichmentCfg = field(default_factory=EnrichmentCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    ingestion: IngestionCfg = field(default_factory=IngestionCfg)
    logging: LoggingCfg = field(default_factory=LoggingCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def validate_config(cfg: DocfuseConfig) -> None:
    """Raise ConfigError for values that would break ingestion or retrieval."""
    ch = cfg.chunking
    if ch.target_size < 1:
        raise ConfigError(f"chunking.target_size must be >= 1, got {ch.target_size}")
    if ch.overlap < 0 or ch.overlap >= ch.target_size:
        raise ConfigError(
            f"chunking.overlap must be in [0, target_size), got overlap={ch.overlap} "
            f"with target_size={ch.target_size}"
        )
    if cfg.embedding.dimensions < 1:
        raise ConfigError(f"embedding.dimensions must be >= 1, got {cfg.embedding.dimensions}")
    if cfg.embedding.batch_size < 1:
        raise ConfigError(f"embedding.batch_size must be >= 1, got {cfg.embedding.batch_size}")
    if cfg.enrichment.concurrency < 1:
        raise ConfigError(
            f"enrichment.concurrency must be >= 1, got {cfg.enrichment.concurrency}"
        )
    r = cfg.retrieval
    if r.vector_weight < 0 or r.bm25_weight < 0 or (r.vector_weight + r.bm25_weight) == 0:
        raise ConfigError(
            "retrieval weights must be non-negative and not both zero "
            f"(vector_weight={r.vector_weight}, bm25_weight={r.bm25_weight})"
        )
    if r.max_results < 1:
        raise ConfigError(f"retrieval.max_results must be >= 1, got {r.max_results}")
    if not cfg.search.language.strip():
        raise ConfigError("search.language must not be empty")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _optional_float(value: Any, default: float | None) -> float | None:
    if value is None:
        return default
    return float(value)


def _cfg_from_dict(data: dict[str, Any]) -> DocfuseConfig:
    """Build a *DocfuseConfig* from a merged raw YAML dict."""
    cfg = DocfuseConfig()

    if "embedding" in data:
        e = data["embedding"] or {}
        d = cfg.embedding
        cfg.embedding = EmbeddingCfg(
            model=str(e.get("model", d.model)),
            dimensions=int(e.get("dimensions", d.dimensions)),
            batch_size=int(e.get("batch_size", d.batch_size)),
            pace_seconds=float(e.get("pace_seconds", d.pace_seconds)),
            timeout_seconds=float(e.get("timeout_seconds", d.timeout_seconds)),
            num_retries=int(e.get("num_retries", d.num_retries)),
        )

    if "enrichment" in data:
        en = data["enrichment"] or {}
        d = cfg.enrichment
        cfg.enrichment = EnrichmentCfg(
            model=str(en.get("model", d.model)),
            concurrency=int(en.get("concurrency", d.concurrency)),
            excerpt_chars=int(en.get("excerpt_chars", d.excerpt_chars)),
            max_tokens=int(en.get("max_tokens", d.max_tokens)),
            timeout_seconds=float(en.get("timeout_seconds", d.timeout_seconds)),
            num_retries=int(en.get("num_retries", d.num_retries)),
            max_fallback_ratio=_optional_float(
                en.get("max_fallback_ratio"), d.max_fallback_ratio
            ),
        )

    if "chunking" in data:
        c = data["chunking"] or {}
        d = cfg.chunking
        cfg.chunking = ChunkingCfg(
            target_size=int(c.get("target_size", d.target_size)),
            overlap=int(c.get("overlap", d.overlap)),
            min_chunk_length=int(c.get("min_chunk_length", d.min_chunk_length)),
        )

    if "retrieval" in data:
        r = data["retrieval"] or {}
        d = cfg.retrieval
        cfg.retrieval = RetrievalCfg(
            max_results=int(r.get("max_results", d.max_results)),
            vector_weight=float(r.get("vector_weight", d.vector_weight)),
            bm25_weight=float(r.get("bm25_weight", d.bm25_weight)),
            similarity_floor=float(r.get("similarity_floor", d.similarity_floor)),
            hybrid=bool(r.get("hybrid", d.hybrid)),
        )

    if "search" in data:
        s = data["search"] or {}
        cfg.search = SearchCfg(language=str(s.get("language", cfg.search.language)).lower())

    if "ingestion" in data:
        i = data["ingestion"] or {}
        cfg.ingestion = IngestionCfg(
            run_timeout_seconds=_optional_float(
                i.get("run_timeout_seconds"), cfg.ingestion.run_timeout_seconds
            ),
        )

    if "logging" in data:
        lg = data["logging"] or {}
        cfg.logging = LoggingCfg(
            level=str(lg.get("level", cfg.logging.level)).upper(),
            json=bool(lg.get("json", cfg.logging.json)),
        )

    return cfg


def _apply_env_overrides(cfg: DocfuseConfig) -> DocfuseConfig:
    """Apply DOCFUSE_* environment variable overrides."""
    if model := os.environ.get("DOCFUSE_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("DOCFUSE_ENRICHMENT_MODEL"):
        cfg.enrichment.model = model
    if language := os.environ.get("DOCFUSE_SEARCH_LANGUAGE"):
        cfg.search.language = language.lower()
    if level := os.environ.get("DOCFUSE_LOG_LEVEL"):
        cfg.logging.level = level.upper()
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> DocfuseConfig:
    """Load and return a merged, validated *DocfuseConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *docfuse.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or if a
            value is out of range (e.g. overlap >= target_size).
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    try:
        cfg = _cfg_from_dict(merged)
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid configuration value: {exc}") from exc

    cfg = _apply_env_overrides(cfg)
    validate_config(cfg)
    return cfg
