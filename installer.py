from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Dict, List

from catalog import Catalog, load_catalog, save_catalog
from config import Config
from filecasing import make_lower_case, restore_case
from profiles import GameProfile, load_profiles, save_profiles
from resolver import ResolvedItem, resolve, resolve_profile
from steamcmd import (
    SteamCmdGame,
    SteamCmdRequest,
    SteamCmdWorkshopItem,
    logout_user,
    run_steamcmd,
)
from syncer import CatalogSource, sync_catalog
from telemetry import start_span
from utils import overwrite_symlink, utc_now

WORKSHOP_SUBDIR = "steam_workshop"
WORKSHOP_CONTENT_PATH = Path("steamapps") / "workshop" / "content"
WORKSHOP_LINK_NAME = "workshop"
MODS_LINK_NAME = "mods"

Downloader = Callable[[SteamCmdRequest], Awaitable[None]]


class RunState(Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    PLANNING = "planning"
    DOWNLOADING = "downloading"
    RECORDING = "recording"
    DONE = "done"
    FAILED = "failed"


@dataclass
class DownloadOptions:
    download_up_to_date: bool = False
    validate: bool = False
    logout: bool = False


@dataclass
class DownloadPlan:
    request: SteamCmdRequest
    item_ids: List[int] = field(default_factory=list)
    # Selected items of games that want lowercase file names.
    lowercase: List[ResolvedItem] = field(default_factory=list)


def _raise_joined(message: str, errors: List[Exception]) -> None:
    if len(errors) == 1:
        raise errors[0]
    raise ExceptionGroup(message, errors)


class Installer:
    """Downloads games and the workshop items they need, and keeps the catalog in step."""

    def __init__(
        self,
        config: Config,
        catalog: Catalog,
        profiles: List[GameProfile],
        *,
        downloader: Downloader = run_steamcmd,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.profiles = profiles
        self.downloader = downloader
        self.state = RunState.IDLE

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> "Installer":
        catalog = load_catalog(config.database_path)
        profiles = load_profiles(config.games_config_path)
        return cls(config, catalog, profiles, **kwargs)

    @property
    def workshop_install_dir(self) -> Path:
        return self.config.games_dir / WORKSHOP_SUBDIR

    @property
    def content_root(self) -> Path:
        return self.workshop_install_dir / WORKSHOP_CONTENT_PATH

    def _set_state(self, state: RunState) -> None:
        logging.info("Run state %s -> %s", self.state.value, state.value)
        self.state = state

    def games(self) -> List[str]:
        return [profile.name for profile in self.profiles]

    def _profile(self, name: str) -> GameProfile | None:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    def items_for_game(self, name: str) -> List[ResolvedItem]:
        profile = self._profile(name)
        if profile is None:
            return []
        return resolve_profile(self.catalog, profile)

    def dependency_order(self, name: str, titles: List[str]) -> List[ResolvedItem]:
        """Resolve the items with the given titles for one game."""
        profile = self._profile(name)
        if profile is None:
            return []
        ids = []
        for title in titles:
            item_id = self.catalog.find_by_title(title)
            if item_id is None:
                raise LookupError(f"could not find workshop item {title}")
            ids.append(item_id)
        return resolve(self.catalog, profile, ids)

    async def update_catalog(self, client: CatalogSource) -> None:
        await sync_catalog(client, self.catalog, self.profiles, batch_size=self.config.batch_size)
        self.save()

    async def logout(self) -> None:
        await logout_user(self.config.steamcmd_path, self.config.login_username)

    def plan(self, options: DownloadOptions) -> DownloadPlan:
        self._set_state(RunState.RESOLVING)
        resolved: Dict[str, List[ResolvedItem]] = {}
        for profile in self.profiles:
            with start_span("installer.resolve", {"game.name": profile.name}):
                resolved[profile.name] = resolve_profile(self.catalog, profile)

        self._set_state(RunState.PLANNING)
        request = SteamCmdRequest(
            steamcmd_path=self.config.steamcmd_path,
            workshop_install_dir=self.workshop_install_dir,
            login_username=self.config.login_username,
            login_password=self.config.login_password,
            validate=options.validate,
            logout=options.logout,
        )
        plan = DownloadPlan(request=request)
        selected: Dict[int, None] = {}
        lowercase: Dict[int, ResolvedItem] = {}
        for profile in self.profiles:
            request.games.append(
                SteamCmdGame(
                    app_id=profile.id,
                    install_dir=self.config.games_dir / profile.name,
                    beta_branch=profile.beta_branch,
                )
            )
            for item_id, item in resolved[profile.name]:
                if not options.download_up_to_date and not item.needs_download():
                    continue
                if profile.make_workshop_items_lowercase:
                    lowercase.setdefault(item_id, (item_id, item))
                if item_id in selected:
                    continue
                selected[item_id] = None
                request.workshop_items.append(
                    SteamCmdWorkshopItem(item.creator_app_id or profile.workshop_app_id, item_id)
                )
        plan.item_ids = list(selected)
        plan.lowercase = list(lowercase.values())
        return plan

    async def download(self, options: DownloadOptions | None = None) -> None:
        options = options or DownloadOptions()
        self.state = RunState.IDLE
        try:
            plan = self.plan(options)
        except Exception:
            self._set_state(RunState.FAILED)
            raise

        logging.info("%d games will be updated", len(plan.request.games))
        logging.info("%d workshop items will be updated", len(plan.request.workshop_items))

        self._set_state(RunState.DOWNLOADING)
        try:
            with start_span(
                "installer.download",
                {
                    "download.games": len(plan.request.games),
                    "download.workshop_items": len(plan.request.workshop_items),
                },
            ):
                self.restore_casing(plan.lowercase)
                await self.downloader(plan.request)
        except asyncio.CancelledError:
            try:
                self.lower_casing(plan.lowercase)
            except OSError:
                logging.exception("Could not lowercase workshop items after cancellation")
            self._set_state(RunState.FAILED)
            raise
        except Exception as exc:
            errors: List[Exception] = [exc]
            self._attempt(errors, "lowercase workshop items", self.lower_casing, plan.lowercase)
            self._attempt(errors, "save catalog", self.save)
            self._set_state(RunState.FAILED)
            logging.error(
                "Download failed, %d games and %d workshop items were not updated",
                len(plan.request.games),
                len(plan.request.workshop_items),
            )
            _raise_joined("download failed", errors)

        self._set_state(RunState.RECORDING)
        now = utc_now()
        for item_id in plan.item_ids:
            self.catalog.workshop_items[item_id].last_downloaded = now

        errors = []
        self._attempt(errors, "lowercase workshop items", self.lower_casing, plan.lowercase)
        self._attempt(errors, "save catalog", self.save)
        self._attempt(errors, "create symlinks", self.create_symlinks)
        if errors:
            self._set_state(RunState.FAILED)
            _raise_joined("recording the download failed", errors)
        self._set_state(RunState.DONE)

    @staticmethod
    def _attempt(errors: List[Exception], what: str, action: Callable, *args) -> None:
        try:
            action(*args)
        except Exception as exc:
            logging.error("Could not %s: %s", what, exc)
            errors.append(exc)

    def restore_casing(self, items: List[ResolvedItem]) -> None:
        """Give the content of ``items`` its original file name casing back."""
        if not items:
            return
        prefixes = tuple(f"{item.content_suffix(item_id)}/" for item_id, item in items)
        for path in self.catalog.path_changes:
            if not path.startswith(prefixes):
                continue
            try:
                restore_case(self.content_root, path)
            except FileNotFoundError:
                logging.debug("Skipping casing restore of missing %s", path)

    def lower_casing(self, items: List[ResolvedItem]) -> None:
        """Lowercase the content of ``items`` and record every renamed path."""
        if not items:
            return
        changed: List[str] = []
        processed: List[str] = []
        try:
            for item_id, item in items:
                suffix = item.content_suffix(item_id)
                processed.append(f"{suffix}/")
                root = self.content_root / suffix
                if not root.is_dir():
                    continue
                make_lower_case(
                    root, lambda original, suffix=suffix: changed.append(f"{suffix}/{original}")
                )
        finally:
            prefixes = tuple(processed)
            self.catalog.path_changes = [
                path for path in self.catalog.path_changes if not path.startswith(prefixes)
            ]
            self.catalog.path_changes.extend(changed)

    def save(self) -> None:
        save_catalog(self.config.database_path, self.catalog)
        save_profiles(self.config.games_config_path, self.profiles, self.catalog)
        if self.workshop_install_dir.exists():
            overwrite_symlink(self.content_root, self.config.games_dir / WORKSHOP_LINK_NAME)

    def _downloaded(self, item_id: int) -> bool:
        item = self.catalog.workshop_items.get(item_id)
        return item is not None and item.last_downloaded is not None

    def create_symlinks(self) -> None:
        """Link ``<game>/mods`` to the game's workshop content."""
        errors: List[Exception] = []
        for profile in self.profiles:
            if not any(self._downloaded(entry.id) for entry in profile.workshop_items):
                continue
            link = self.config.games_dir / profile.name / MODS_LINK_NAME
            if link.is_dir() and not os.path.islink(link):
                logging.warning("%s is a directory, not replacing it with a link", link)
                continue
            try:
                overwrite_symlink(self.content_root / str(profile.workshop_app_id), link)
            except OSError as exc:
                errors.append(exc)
        if errors:
            _raise_joined("could not create mod links", errors)
