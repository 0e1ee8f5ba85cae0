import io
import os
from typing import Dict, Iterable, Literal, Mapping, Optional, Sequence

import structlog
from dotenv import dotenv_values

logger = structlog.get_logger(__name__)

MergeStrategy = Literal["last_wins", "first_wins", "prefixed"]


def parse_env_file(content: str) -> Dict[str, str]:
    """
    Parses `.env`-style text (KEY=value lines, comments, quoting) into an
    ordered mapping. Keys declared without a value are dropped.
    """
    if not content or not content.strip():
        return {}
    parsed = dotenv_values(stream=io.StringIO(content))
    return {key: value for key, value in parsed.items() if value is not None}


def load_system_env(names: Iterable[str]) -> Dict[str, str]:
    """Picks the named variables from the current process environment, skipping unset ones."""
    return {name: os.environ[name] for name in names if name in os.environ}


def merge_env_sources(
    sources: Sequence[Mapping[str, str]], strategy: MergeStrategy = "last_wins"
) -> Dict[str, str]:
    """
    Merges several credential sources into one environment variable set.

    Args:
        sources: The sources in priority order as configured by the user.
        strategy: `last_wins` lets later sources override earlier ones,
            `first_wins` keeps the first value seen, and `prefixed` keeps every
            value by namespacing keys as `CRED{n}_{KEY}` (n is 1-based).

    Returns:
        The merged, ordered mapping.
    """
    if strategy not in ("last_wins", "first_wins", "prefixed"):
        raise ValueError(f"Unknown merge strategy: '{strategy}'")

    merged: Dict[str, str] = {}
    for index, source in enumerate(sources, start=1):
        for key, value in source.items():
            if strategy == "prefixed":
                merged[f"CRED{index}_{key}"] = value
            elif strategy == "first_wins":
                merged.setdefault(key, value)
            else:
                merged[key] = value

    logger.debug(
        "credentials.merged", sources=len(sources), keys=len(merged), strategy=strategy
    )
    return merged


def build_env_vars(
    env_file_contents: Sequence[str],
    system_env_names: Optional[Iterable[str]] = None,
    strategy: MergeStrategy = "last_wins",
) -> Dict[str, str]:
    """Parses each credential `.env` blob, appends selected system variables, and merges them."""
    sources = [parse_env_file(content) for content in env_file_contents]
    if system_env_names:
        sources.append(load_system_env(system_env_names))
    return merge_env_sources(sources, strategy)
