"""Best-effort icon lookup for processes.

Icons are an optional enrichment: a resolver may be absent on a platform,
and any resolver may fail for any process. The sampler merges whatever a
resolver returns and treats every failure as "no icon".
"""

from __future__ import annotations

import plistlib
import sys
from pathlib import Path
from typing import Protocol

import structlog

log = structlog.get_logger()

DESKTOP_ENTRY_DIRS = (
    Path("/usr/share/applications"),
    Path("/usr/local/share/applications"),
    Path.home() / ".local" / "share" / "applications",
)

ICON_THEME_DIRS = (
    Path("/usr/share/icons/hicolor/48x48/apps"),
    Path("/usr/share/icons/hicolor/scalable/apps"),
    Path("/usr/share/pixmaps"),
)


class IconResolver(Protocol):
    """Maps an executable to an icon file path, or None."""

    def warm(self) -> None: ...

    def resolve(self, executable: str, command: str) -> str | None: ...


def parse_desktop_entry(text: str) -> tuple[str | None, str | None]:
    """Return (Exec basename, Icon) from a .desktop file's [Desktop Entry] group."""
    exec_name = None
    icon = None
    in_entry = False

    for line in text.splitlines():
        line = line.strip()
        if line.startswith("["):
            in_entry = line == "[Desktop Entry]"
            continue
        if not in_entry or "=" not in line:
            continue

        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()
        if key == "Exec" and value and exec_name is None:
            exec_name = Path(value.split()[0].strip('"')).name
        elif key == "Icon" and value and icon is None:
            icon = value

    return exec_name, icon


class DesktopEntryIconResolver:
    """Linux: match the executable against Exec= lines of installed .desktop files."""

    def __init__(
        self,
        entry_dirs: tuple[Path, ...] = DESKTOP_ENTRY_DIRS,
        theme_dirs: tuple[Path, ...] = ICON_THEME_DIRS,
    ) -> None:
        self._entry_dirs = entry_dirs
        self._theme_dirs = theme_dirs
        self._index: dict[str, str] | None = None
        self._cache: dict[str, str | None] = {}

    def _build_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        for directory in self._entry_dirs:
            if not directory.is_dir():
                continue
            for entry in directory.glob("*.desktop"):
                try:
                    exec_name, icon = parse_desktop_entry(
                        entry.read_text(encoding="utf-8", errors="replace")
                    )
                except OSError:
                    continue
                if exec_name and icon:
                    index.setdefault(exec_name, icon)
        return index

    def _locate(self, icon: str) -> str | None:
        if Path(icon).is_absolute():
            return icon if Path(icon).exists() else None
        for directory in self._theme_dirs:
            for suffix in (".png", ".svg", ".xpm"):
                candidate = directory / f"{icon}{suffix}"
                if candidate.exists():
                    return str(candidate)
        return None

    def warm(self) -> None:
        """Read every .desktop file once. Blocking; run it off the event loop."""
        if self._index is None:
            self._index = self._build_index()
            log.debug("icon_index_built", entries=len(self._index))

    def resolve(self, executable: str, command: str) -> str | None:
        if executable in self._cache:
            return self._cache[executable]
        self.warm()

        icon = self._index.get(executable)
        path = self._locate(icon) if icon else None
        self._cache[executable] = path
        return path


class AppBundleIconResolver:
    """macOS: read CFBundleIconFile from the Info.plist of the enclosing .app bundle."""

    def __init__(self) -> None:
        self._cache: dict[str, str | None] = {}

    def warm(self) -> None:
        pass

    def resolve(self, executable: str, command: str) -> str | None:
        marker = ".app/"
        idx = command.find(marker)
        if idx == -1:
            return None
        bundle = command[: idx + len(".app")]
        if bundle in self._cache:
            return self._cache[bundle]

        path = None
        info_plist = Path(bundle) / "Contents" / "Info.plist"
        try:
            with open(info_plist, "rb") as f:
                info = plistlib.load(f)
        except FileNotFoundError:
            info = {}
        except (plistlib.InvalidFileException, OSError) as e:
            log.debug("icon_plist_unreadable", bundle=bundle, error=str(e))
            info = {}

        if isinstance(info, dict):
            icon_file = info.get("CFBundleIconFile")
            if isinstance(icon_file, str) and icon_file:
                if not icon_file.endswith(".icns"):
                    icon_file += ".icns"
                candidate = Path(bundle) / "Contents" / "Resources" / icon_file
                path = str(candidate) if candidate.exists() else None

        self._cache[bundle] = path
        return path


def default_icon_resolver(platform: str | None = None) -> IconResolver | None:
    """Return the resolver for this platform, or None where icons are unsupported."""
    platform = platform or sys.platform
    if platform == "darwin":
        return AppBundleIconResolver()
    if platform.startswith("linux"):
        return DesktopEntryIconResolver()
    log.debug("icon_lookup_unsupported", platform=platform)
    return None
