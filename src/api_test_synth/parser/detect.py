"""Auto-detect the web framework of a source tree."""

import json
from pathlib import Path

from api_test_synth.errors import ConfigError
from api_test_synth.parser.base import SKIPPED_DIRS, FrameworkAdapter
from api_test_synth.parser.express import ExpressAdapter
from api_test_synth.parser.fastapi import FastAPIAdapter
from api_test_synth.parser.spring import SpringAdapter

ADAPTERS: dict[str, type[FrameworkAdapter]] = {
    SpringAdapter.name: SpringAdapter,
    ExpressAdapter.name: ExpressAdapter,
    FastAPIAdapter.name: FastAPIAdapter,
}


def get_adapter(name: str) -> FrameworkAdapter:
    """Instantiate the adapter registered under name."""
    try:
        return ADAPTERS[name]()
    except KeyError:
        raise ConfigError(f"unknown adapter '{name}' (choose from {', '.join(sorted(ADAPTERS))})") from None


def detect_adapter(root: Path) -> str:
    """Detect which adapter fits a source tree.

    Build manifests are checked first, then source markers.
    Returns: 'spring', 'express', or 'fastapi'.
    """
    if (root / "pom.xml").exists() or (root / "build.gradle").exists() or (root / "build.gradle.kts").exists():
        return "spring"

    package_json = root / "package.json"
    if package_json.exists():
        try:
            data = json.loads(package_json.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, ValueError, OSError):
            data = {}
        if isinstance(data, dict) and "express" in data.get("dependencies", {}):
            return "express"

    for manifest in ("requirements.txt", "pyproject.toml", "Pipfile"):
        path = root / manifest
        if path.exists() and "fastapi" in path.read_text(encoding="utf-8", errors="replace").lower():
            return "fastapi"

    markers = {
        ".java": ("@RestController", "spring"),
        ".js": ("express", "express"),
        ".ts": ("express", "express"),
        ".py": ("fastapi", "fastapi"),
    }
    for path in sorted(root.rglob("*")):
        if path.suffix not in markers or any(p in SKIPPED_DIRS for p in path.relative_to(root).parts):
            continue
        marker, name = markers[path.suffix]
        if marker in path.read_text(encoding="utf-8", errors="replace"):
            return name

    raise ConfigError(f"could not detect the framework used in {root}; pass --adapter explicitly")
