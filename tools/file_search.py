"""File, folder, and installed-application search under the user's home.

Searches are plain filesystem walks (no OS search index), pruned of
dependency/cache/trash directories and bounded in depth and result count so
a voice query never stalls on a huge tree.
"""

import asyncio
import json
import logging
import os
import platform
from pathlib import Path
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

_SYSTEM = platform.system()

EXCLUDED_DIRS = frozenset({
    "node_modules", ".git", ".hg", ".svn", ".vscode", ".idea", "__pycache__", ".cache",
    "AppData", "temp", "tmp", ".npm", ".nuget", ".cargo", ".rustup", ".gradle", ".m2",
    "venv", ".venv", ".env", ".tox", ".mypy_cache", ".pytest_cache", "site-packages",
    "dist", "build", "Library", "Application Data", ".Trash", "$Recycle.Bin", ".local",
})


def relative_to_home(path: Path, home: Path) -> str:
    try:
        return str(Path(path).relative_to(home))
    except ValueError:
        return str(path)


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------

def application_dirs() -> List[Path]:
    """Directories that hold launchable application entries on this OS."""
    home = Path.home()
    if _SYSTEM == "Windows":
        dirs = [
            Path(os.environ.get("ProgramData", r"C:\ProgramData")) / "Microsoft/Windows/Start Menu/Programs",
            Path(os.environ.get("APPDATA", home / "AppData/Roaming")) / "Microsoft/Windows/Start Menu/Programs",
        ]
    elif _SYSTEM == "Darwin":
        dirs = [Path("/Applications"), Path("/System/Applications"), home / "Applications"]
    else:
        data_dirs = os.environ.get("XDG_DATA_DIRS", "/usr/local/share:/usr/share").split(":")
        dirs = [home / ".local/share/applications"]
        dirs += [Path(d) / "applications" for d in data_dirs if d]
        dirs += [Path("/var/lib/flatpak/exports/share/applications"), Path("/var/lib/snapd/desktop/applications")]
    return [d for d in dirs if d.is_dir()]


def _desktop_entry_name(path: Path) -> Optional[str]:
    """Name= from a .desktop file's [Desktop Entry] section; None if hidden."""
    name = None
    try:
        with open(path, encoding="utf-8", errors="replace") as f:
            in_entry = False
            for line in f:
                line = line.strip()
                if line.startswith("["):
                    in_entry = line == "[Desktop Entry]"
                    continue
                if not in_entry:
                    continue
                if line in ("NoDisplay=true", "Hidden=true"):
                    return None
                if line.startswith("Name=") and name is None:
                    name = line[5:].strip()
    except OSError as e:
        logger.debug("Unreadable desktop entry %s: %s", path, e)
        return None
    return name or path.stem


def _iter_app_entries(dirs: Iterable[Path]):
    for base in dirs:
        if _SYSTEM == "Darwin":
            for entry in sorted(base.glob("*.app")) + sorted(base.glob("*/*.app")):
                yield entry.stem, entry, "app"
            continue
        for entry in sorted(base.rglob("*.lnk")):
            yield entry.stem, entry, "shortcut"
        for entry in sorted(base.rglob("*.desktop")):
            name = _desktop_entry_name(entry)
            if name:
                yield name, entry, "desktop"


def search_applications(query: str, limit: int = 10,
                        dirs: Optional[List[Path]] = None) -> List[Dict[str, str]]:
    """Installed applications whose display name contains *query*."""
    if not query:
        return []
    needle = query.lower().strip()
    results: List[Dict[str, str]] = []
    seen = set()
    for name, path, kind in _iter_app_entries(application_dirs() if dirs is None else dirs):
        if needle not in name.lower() or name.lower() in seen:
            continue
        seen.add(name.lower())
        results.append({"name": name, "path": str(path), "type": kind})
        if len(results) >= limit:
            break
    return results


# ---------------------------------------------------------------------------
# Files and folders
# ---------------------------------------------------------------------------

def search_files_and_folders(
    query: str,
    home: Optional[Path] = None,
    max_results: int = 30,
    max_depth: int = 4,
) -> Dict[str, List[str]]:
    """Walk *home* for names containing *query*. Paths are home-relative."""
    home = Path(home or Path.home())
    files: List[str] = []
    folders: List[str] = []
    if not query:
        return {"files": files, "folders": folders}

    needle = query.lower().strip()
    base_depth = len(home.parts)

    for root, dirnames, filenames in os.walk(home, onerror=lambda e: logger.debug("walk: %s", e)):
        depth = len(Path(root).parts) - base_depth
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS and not d.startswith("."))

        for d in dirnames:
            if needle in d.lower():
                folders.append(relative_to_home(Path(root) / d, home))
                if len(files) + len(folders) >= max_results:
                    return {"files": files, "folders": folders}

        for name in sorted(filenames):
            if needle in name.lower():
                files.append(relative_to_home(Path(root) / name, home))
                if len(files) + len(folders) >= max_results:
                    return {"files": files, "folders": folders}

        if depth + 1 >= max_depth:
            dirnames[:] = []

    return {"files": files, "folders": folders}


async def perform_search(
    query: str,
    home: Optional[Path] = None,
    max_results: int = 30,
    max_depth: int = 4,
    app_dirs: Optional[List[Path]] = None,
) -> str:
    """Search apps and files concurrently. JSON string result.

    ``{"apps": [...], "files": [...], "folders": [...]}`` or
    ``{"notFound": true}`` when nothing matched.
    """
    if not query or not query.strip():
        return json.dumps({"notFound": True})

    apps, found = await asyncio.gather(
        asyncio.to_thread(search_applications, query, 10, app_dirs),
        asyncio.to_thread(search_files_and_folders, query, home, max_results, max_depth),
    )
    if not apps and not found["files"] and not found["folders"]:
        return json.dumps({"notFound": True})
    return json.dumps({"apps": apps, "files": found["files"], "folders": found["folders"]})
