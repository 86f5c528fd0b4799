from __future__ import annotations

import asyncio
import logging
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Deque, List, Optional

from telemetry import start_span
from utils import ensure_dir

TERMINATE_GRACE_SECONDS = 10.0
OUTPUT_TAIL_LINES = 40

_ANSI_RE = re.compile(r"\x1B\[[0-?]*[ -/]*[@-~]")
_PROMPT_RE = re.compile(r"(password:|Steam Guard code:|Two-factor code:)\s*$", re.IGNORECASE)
_PASSWORD_PROMPT_RE = re.compile(r"password:\s*$", re.IGNORECASE)


class DownloadError(RuntimeError):
    """steamcmd could not complete a download request."""


@dataclass(frozen=True)
class SteamCmdGame:
    app_id: int
    install_dir: Path
    beta_branch: str = ""


@dataclass(frozen=True)
class SteamCmdWorkshopItem:
    app_id: int
    item_id: int


@dataclass
class SteamCmdRequest:
    steamcmd_path: Path
    workshop_install_dir: Path
    login_username: str = ""
    login_password: str = ""
    games: List[SteamCmdGame] = field(default_factory=list)
    workshop_items: List[SteamCmdWorkshopItem] = field(default_factory=list)
    validate: bool = False
    logout: bool = False


def _strip_ansi(value: str) -> str:
    return _ANSI_RE.sub("", value)


def extract_steamcmd_error(output: str) -> str | None:
    cleaned = _strip_ansi(output or "").replace("\r", "\n")
    specific_match = re.search(
        r"(ERROR!\s+Download item\s+\d+\s+failed\s+\([^)]+\)\.)",
        cleaned,
        flags=re.IGNORECASE | re.DOTALL,
    )
    if specific_match:
        return " ".join(specific_match.group(1).split())
    for raw_line in cleaned.splitlines():
        line = raw_line.strip()
        if "ERROR!" in line:
            return " ".join(line.split())
    return None


def build_command(request: SteamCmdRequest) -> List[str]:
    """Translate a request into steamcmd ``+command`` arguments."""
    username = request.login_username or "anonymous"
    cmd = [str(request.steamcmd_path), "+@ShutdownOnFailedCommand", "1"]
    if request.games:
        # force_install_dir must come before login for app_update to honour it.
        cmd += ["+force_install_dir", str(request.games[0].install_dir)]
    # The password is written to stdin when steamcmd prompts for it.
    cmd += ["+login", username]
    for index, game in enumerate(request.games):
        if index > 0:
            cmd += ["+force_install_dir", str(game.install_dir)]
        cmd += ["+app_update", str(game.app_id)]
        if game.beta_branch:
            cmd += ["-beta", game.beta_branch]
        if request.validate:
            cmd.append("validate")
    if request.workshop_items:
        cmd += ["+force_install_dir", str(request.workshop_install_dir)]
        for item in request.workshop_items:
            cmd += ["+workshop_download_item", str(item.app_id), str(item.item_id)]
            if request.validate:
                cmd.append("validate")
    if request.logout:
        cmd.append("+logout")
    cmd.append("+quit")
    return cmd


async def _answer_prompt(prompt: str, stdin, password: str) -> None:
    if _PASSWORD_PROMPT_RE.search(prompt) and password:
        logging.info("steamcmd asked for the account password, sending it")
        answer = password
    else:
        logging.warning("steamcmd is waiting for input: %s", prompt)
        answer = await asyncio.to_thread(sys.stdin.readline)
    stdin.write(answer.strip().encode("utf-8") + b"\n")
    await stdin.drain()


async def _stream_output(
    stream: asyncio.StreamReader,
    tail: Deque[str],
    stdin: Optional[asyncio.StreamWriter] = None,
    password: str = "",
) -> None:
    pending = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        pending += _strip_ansi(chunk.decode("utf-8", errors="replace")).replace("\r", "\n")
        *lines, pending = pending.split("\n")
        for line in lines:
            line = line.strip()
            if line:
                logging.info("steamcmd: %s", line)
                tail.append(line)
        if _PROMPT_RE.search(pending):
            prompt = pending.strip()
            tail.append(prompt)
            pending = ""
            if stdin is None:
                logging.warning("steamcmd is waiting for input: %s", prompt)
            else:
                await _answer_prompt(prompt, stdin, password)
    if pending.strip():
        logging.info("steamcmd: %s", pending.strip())
        tail.append(pending.strip())


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    logging.warning("Stopping steamcmd (pid=%s)", process.pid)
    process.terminate()
    try:
        await asyncio.wait_for(process.wait(), TERMINATE_GRACE_SECONDS)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()


async def run_steamcmd(request: SteamCmdRequest) -> None:
    if not request.steamcmd_path.exists():
        raise DownloadError(f"steamcmd not found at {request.steamcmd_path}")
    for game in request.games:
        ensure_dir(game.install_dir)
    ensure_dir(request.workshop_install_dir)

    cmd = build_command(request)
    logging.info("Running %s", " ".join(cmd))
    tail: Deque[str] = deque(maxlen=OUTPUT_TAIL_LINES)
    with start_span(
        "steamcmd.run",
        {
            "steamcmd.games": len(request.games),
            "steamcmd.workshop_items": len(request.workshop_items),
            "steamcmd.validate": request.validate,
        },
    ):
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            await _stream_output(process.stdout, tail, process.stdin, request.login_password)
            process.stdin.close()
            returncode = await process.wait()
        finally:
            await _terminate(process)

    output = "\n".join(tail)
    parsed_error = extract_steamcmd_error(output)
    if returncode != 0:
        reason = parsed_error or f"steamcmd exit code {returncode}"
        logging.error("steamcmd failed: %s", reason)
        raise DownloadError(reason)
    if parsed_error:
        logging.error("steamcmd reported an error: %s", parsed_error)
        raise DownloadError(parsed_error)


async def logout_user(steamcmd_path: Path, username: str) -> None:
    if not steamcmd_path.exists():
        raise DownloadError(f"steamcmd not found at {steamcmd_path}")
    cmd = [str(steamcmd_path), "+login", username or "anonymous", "+logout", "+quit"]
    logging.info("Logging %s out of steamcmd", username or "anonymous")
    process = await asyncio.create_subprocess_exec(*cmd)
    try:
        returncode = await process.wait()
    finally:
        await _terminate(process)
    if returncode != 0:
        raise DownloadError(f"steamcmd logout exit code {returncode}")
