"""marginalia configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (MARGINALIA_EMBEDDING_MODEL, MARGINALIA_EMBEDDING_PROVIDER,
                             MARGINALIA_DB)
  3. Per-project marginalia.yaml  (current directory)
  4. Global ~/.marginalia/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from marginalia.ingest.chunker import ChunkingOptions

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".marginalia"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "marginalia.yaml"
DEFAULT_DB_NAME: str = ".marginalia.db"

# Fields that suggest an API key — forbidden in global config.
# Does NOT match legitimate keys like max_tokens, target_tokens, overlap_tokens.
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
    ["chunking", "retrieval", "embedding", "indexing", "storage"]
)

_PROVIDERS: frozenset[str] = frozenset(["local", "litellm", "none"])


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when a config file contains an invalid or forbidden value."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ChunkingCfg:
    """Chunk sizing in estimated tokens (marginalia.yaml: chunking:)."""

    target_tokens: int = 400
    max_tokens: int = 500
    overlap_tokens: int = 100

    def options(self) -> ChunkingOptions:
        return ChunkingOptions(self.target_tokens, self.max_tokens, self.overlap_tokens)


@dataclass
class RetrievalCfg:
    """Search ranking configuration (marginalia.yaml: retrieval:)."""

    top_k: int = 12
    rrf_k: int = 60
    bm25_k1: float = 1.5
    bm25_b: float = 0.75


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (marginalia.yaml: embedding:).

    Attributes:
        provider: ``local`` (sentence-transformers), ``litellm`` or ``none``.
        model: Model identifier; empty means the provider's default.
        batch_size: Chunks embedded per provider call during backfill.
        enabled: Whether indexing queues embedding backfill at all.
    """

    provider: str = "local"
    model: str = ""
    batch_size: int = 8
    enabled: bool = True


@dataclass
class IndexingCfg:
    """Background indexing configuration (marginalia.yaml: indexing:)."""

    use_worker: bool = True
    chunk_batch_size: int = 50
    yield_every_chapters: int = 3
    backfill_yield_seconds: float = 0.0


@dataclass
class StorageCfg:
    """Chunk store location (marginalia.yaml: storage:)."""

    db_path: str = DEFAULT_DB_NAME


@dataclass
class MarginaliaConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    indexing: IndexingCfg = field(default_factory=IndexingCfg)
    storage: StorageCfg = field(default_factory=StorageCfg)


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


def _validate(cfg: MarginaliaConfig) -> None:
    try:
        cfg.chunking.options()
    except ValueError as exc:
        raise ConfigError(f"Invalid chunking config: {exc}") from exc
    if cfg.embedding.provider not in _PROVIDERS:
        raise ConfigError(
            f"embedding.provider must be one of {', '.join(sorted(_PROVIDERS))}, "
            f"got '{cfg.embedding.provider}'"
        )
    if cfg.retrieval.top_k < 1:
        raise ConfigError(f"retrieval.top_k must be >= 1, got {cfg.retrieval.top_k}")
    if cfg.retrieval.rrf_k < 0:
        raise ConfigError(f"retrieval.rrf_k must be >= 0, got {cfg.retrieval.rrf_k}")


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"'{path}' must contain a mapping at the top level.")
    return data


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


def _cfg_from_dict(data: dict[str, Any]) -> MarginaliaConfig:
    """Build a *MarginaliaConfig* from a merged raw YAML dict."""
    cfg = MarginaliaConfig()

    try:
        if "chunking" in data:
            c = data["chunking"] or {}
            cfg.chunking = ChunkingCfg(
                target_tokens=int(c.get("target_tokens", cfg.chunking.target_tokens)),
                max_tokens=int(c.get("max_tokens", cfg.chunking.max_tokens)),
                overlap_tokens=int(c.get("overlap_tokens", cfg.chunking.overlap_tokens)),
            )

        if "retrieval" in data:
            r = data["retrieval"] or {}
            cfg.retrieval = RetrievalCfg(
                top_k=int(r.get("top_k", cfg.retrieval.top_k)),
                rrf_k=int(r.get("rrf_k", cfg.retrieval.rrf_k)),
                bm25_k1=float(r.get("bm25_k1", cfg.retrieval.bm25_k1)),
                bm25_b=float(r.get("bm25_b", cfg.retrieval.bm25_b)),
            )

        if "embedding" in data:
            e = data["embedding"] or {}
            cfg.embedding = EmbeddingCfg(
                provider=str(e.get("provider", cfg.embedding.provider)),
                model=str(e.get("model") or cfg.embedding.model),
                batch_size=int(e.get("batch_size", cfg.embedding.batch_size)),
                enabled=bool(e.get("enabled", cfg.embedding.enabled)),
            )

        if "indexing" in data:
            i = data["indexing"] or {}
            cfg.indexing = IndexingCfg(
                use_worker=bool(i.get("use_worker", cfg.indexing.use_worker)),
                chunk_batch_size=int(i.get("chunk_batch_size", cfg.indexing.chunk_batch_size)),
                yield_every_chapters=int(
                    i.get("yield_every_chapters", cfg.indexing.yield_every_chapters)
                ),
                backfill_yield_seconds=float(
                    i.get("backfill_yield_seconds", cfg.indexing.backfill_yield_seconds)
                ),
            )

        if "storage" in data:
            s = data["storage"] or {}
            cfg.storage = StorageCfg(db_path=str(s.get("db_path", cfg.storage.db_path)))
    except (TypeError, ValueError, AttributeError) as exc:
        raise ConfigError(f"Invalid config value: {exc}") from exc

    return cfg


def _apply_env_overrides(cfg: MarginaliaConfig) -> MarginaliaConfig:
    """Apply MARGINALIA_* environment variable overrides."""
    if model := os.environ.get("MARGINALIA_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if provider := os.environ.get("MARGINALIA_EMBEDDING_PROVIDER"):
        cfg.embedding.provider = provider
    if db_path := os.environ.get("MARGINALIA_DB"):
        cfg.storage.db_path = db_path
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> MarginaliaConfig:
    """Load and return a merged *MarginaliaConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *marginalia.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigError: If global config contains API-key-like fields, or a
            value is malformed (e.g. overlap_tokens >= target_tokens).
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = _read_yaml(global_path)
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-project config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = _read_yaml(project_cfg_path)
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.marginalia/config.yaml`` with defaults if it does not exist.

    Creates the parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# marginalia global configuration — defaults only.\n"
            "# NEVER store API keys here — use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "\n"
            "embedding:\n"
            "  provider: local\n"
            "  model: sentence-transformers/all-MiniLM-L6-v2\n"
            "\n"
            "chunking:\n"
            "  target_tokens: 400\n"
            "  max_tokens: 500\n"
            "  overlap_tokens: 100\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
