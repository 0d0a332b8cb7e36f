#!/usr/bin/env python3
"""
Host action handlers: applications, files, system controls, clipboard,
processes, URLs, and read-only shell commands.

Every handler takes ``(params, context)`` and returns a short string (often
JSON) that the query service folds into the spoken reply. Known failures are
raised as ActionHandlerError / ActionRejectedByPolicy and end up as error
results for that one action.

Registered names (aliases in parentheses):
    launchApplication, openFile, searchFiles, systemControl, openUrl,
    getClipboard, setClipboard, listProcesses, runCommand (runPowerShell),
    getSystemInfo, getTime, listen
"""

import json
import logging
import os
import platform
import re
import shutil
import subprocess
import time
import webbrowser
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

import psutil
import pyperclip

from tools.action_parser import get_param
from tools.file_search import perform_search, search_applications
from tools.registry import (
    ActionContext,
    ActionHandlerError,
    ActionRegistry,
    ActionRejectedByPolicy,
    ActionUnavailable,
)
from tools.shell_policy import check_command

logger = logging.getLogger(__name__)

_SYSTEM = platform.system()
_IS_WINDOWS = _SYSTEM == "Windows"

CLIPBOARD_READ_LIMIT = 2000
ALLOWED_URL_SCHEMES = frozenset({"http", "https"})
_HAS_SCHEME = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.-]*:')


# =============================================================================
# Helpers
# =============================================================================

def _popen_detached(argv) -> None:
    kwargs: dict = {}
    if not _IS_WINDOWS:
        kwargs["preexec_fn"] = os.setsid
    subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        **kwargs,
    )


def open_path(path: str) -> None:
    """Open a file, folder, or app entry with the OS default handler."""
    try:
        if _IS_WINDOWS:
            os.startfile(path)  # type: ignore[attr-defined]
        elif _SYSTEM == "Darwin":
            _popen_detached(["open", path])
        elif path.endswith(".desktop") and shutil.which("gtk-launch"):
            _popen_detached(["gtk-launch", Path(path).stem])
        elif path.endswith(".desktop") and shutil.which("gio"):
            _popen_detached(["gio", "launch", path])
        else:
            _popen_detached(["xdg-open", path])
    except OSError as e:
        raise ActionHandlerError(f"Could not open {path}: {e}") from e


# =============================================================================
# Applications and files
# =============================================================================

def launch_application(params: Dict[str, str], context: ActionContext) -> str:
    app_name = get_param(params, "appName", "app", "name")
    if not app_name:
        raise ActionHandlerError("No application name given")

    apps = search_applications(app_name, limit=1)
    if apps:
        open_path(apps[0]["path"])
        return f"Launching {apps[0]['name']}"

    # Fallback: executables on PATH ("notepad", "calc", "firefox").
    for candidate in (app_name, app_name.replace(" ", "").lower(), app_name.replace(" ", "-").lower()):
        exe = shutil.which(candidate)
        if exe:
            try:
                _popen_detached([exe])
            except OSError as e:
                raise ActionHandlerError(f"Error launching {app_name}: {e}") from e
            return f"Launching {app_name}"

    raise ActionHandlerError(f"Could not find or launch {app_name}")


def open_file(params: Dict[str, str], context: ActionContext) -> str:
    file_path = get_param(params, "filePath", "path", "file")
    if not file_path:
        raise ActionHandlerError("No file path given")

    home = Path(context.home).resolve()
    resolved = (home / os.path.expanduser(file_path)).resolve()
    if resolved != home and home not in resolved.parents:
        raise ActionRejectedByPolicy("Access denied: path escapes home directory")
    if not resolved.exists():
        raise ActionHandlerError(f"File not found: {file_path}")

    open_path(str(resolved))
    return f"Opened {file_path}"


async def search_files(params: Dict[str, str], context: ActionContext) -> str:
    query = get_param(params, "query", "q", "name", default="")
    return await perform_search(
        query,
        home=context.home,
        max_results=context.search_max_results,
        max_depth=context.search_max_depth,
    )


# =============================================================================
# System controls
# =============================================================================

def _clamp(value: int) -> int:
    return max(0, min(100, value))


POWERSHELL_CONTROL_SCRIPTS: Dict[str, Callable[[int], str]] = {
    "volumeUp": lambda v: "$w = New-Object -ComObject WScript.Shell; $w.SendKeys([char]175)",
    "volumeDown": lambda v: "$w = New-Object -ComObject WScript.Shell; $w.SendKeys([char]174)",
    "volumeMute": lambda v: "$w = New-Object -ComObject WScript.Shell; $w.SendKeys([char]173)",
    # 50 presses down resets to 0, each press up is 2%
    "setVolume": lambda v: (
        "$w = New-Object -ComObject WScript.Shell; "
        "for($i=0;$i -lt 50;$i++) { $w.SendKeys([char]174) }; "
        f"for($i=0;$i -lt {round(_clamp(v) / 2)};$i++) {{ $w.SendKeys([char]175) }}"
    ),
    "setBrightness": lambda v: (
        "Get-CimInstance -Namespace root/WMI -ClassName WmiMonitorBrightnessMethods | "
        f"Invoke-CimMethod -MethodName WmiSetBrightness -Arguments @{{ Timeout = 0; Brightness = {_clamp(v)} }}"
    ),
    "brightnessUp": lambda v: (
        "$b = (Get-CimInstance -Namespace root/WMI -ClassName WmiMonitorBrightness).CurrentBrightness; "
        "Get-CimInstance -Namespace root/WMI -ClassName WmiMonitorBrightnessMethods | "
        "Invoke-CimMethod -MethodName WmiSetBrightness -Arguments @{ Timeout = 0; Brightness = [math]::Min(100, $b + 10) }"
    ),
    "brightnessDown": lambda v: (
        "$b = (Get-CimInstance -Namespace root/WMI -ClassName WmiMonitorBrightness).CurrentBrightness; "
        "Get-CimInstance -Namespace root/WMI -ClassName WmiMonitorBrightnessMethods | "
        "Invoke-CimMethod -MethodName WmiSetBrightness -Arguments @{ Timeout = 0; Brightness = [math]::Max(0, $b - 10) }"
    ),
    "wifiToggle": lambda v: (
        "$a = Get-NetAdapter | Where-Object { $_.InterfaceDescription -match 'Wi-Fi|Wireless' } | Select-Object -First 1; "
        "if ($a.Status -eq 'Up') { Disable-NetAdapter -Name $a.Name -Confirm:$false } "
        "else { Enable-NetAdapter -Name $a.Name -Confirm:$false }"
    ),
    "bluetoothToggle": lambda v: (
        "$b = Get-PnpDevice | Where-Object { $_.Class -eq 'Bluetooth' -and $_.FriendlyName -match 'Bluetooth' } "
        "| Select-Object -First 1; "
        "if ($b.Status -eq 'OK') { Disable-PnpDevice -InstanceId $b.InstanceId -Confirm:$false } "
        "else { Enable-PnpDevice -InstanceId $b.InstanceId -Confirm:$false }"
    ),
    "shutdown": lambda v: "shutdown /s /t 15",
    "restart": lambda v: "shutdown /r /t 15",
    "sleep": lambda v: "rundll32.exe powrprof.dll,SetSuspendState 0,1,0",
    "lock": lambda v: "rundll32.exe user32.dll,LockWorkStation",
    "emptyTrash": lambda v: "Clear-RecycleBin -Force -ErrorAction SilentlyContinue",
    "openSettings": lambda v: "Start-Process ms-settings:",
}

POSIX_CONTROL_SCRIPTS: Dict[str, Callable[[int], str]] = {
    "volumeUp": lambda v: "pactl set-sink-volume @DEFAULT_SINK@ +5% || amixer -q set Master 5%+",
    "volumeDown": lambda v: "pactl set-sink-volume @DEFAULT_SINK@ -5% || amixer -q set Master 5%-",
    "volumeMute": lambda v: "pactl set-sink-mute @DEFAULT_SINK@ toggle || amixer -q set Master toggle",
    "setVolume": lambda v: (
        f"pactl set-sink-volume @DEFAULT_SINK@ {_clamp(v)}% || amixer -q set Master {_clamp(v)}%"
    ),
    "setBrightness": lambda v: f"brightnessctl -q set {_clamp(v)}%",
    "brightnessUp": lambda v: "brightnessctl -q set +10%",
    "brightnessDown": lambda v: "brightnessctl -q set 10%-",
    "wifiToggle": lambda v: (
        'if [ "$(nmcli radio wifi)" = "enabled" ]; then nmcli radio wifi off; else nmcli radio wifi on; fi'
    ),
    "bluetoothToggle": lambda v: (
        "if rfkill list bluetooth | grep -q 'Soft blocked: yes'; "
        "then rfkill unblock bluetooth; else rfkill block bluetooth; fi"
    ),
    "shutdown": lambda v: "shutdown -h +1",
    "restart": lambda v: "shutdown -r +1",
    "sleep": lambda v: "systemctl suspend",
    "lock": lambda v: "loginctl lock-session",
    "emptyTrash": lambda v: "gio trash --empty",
    "openSettings": lambda v: "(gnome-control-center >/dev/null 2>&1 &)",
}

SYSTEM_CONTROL_COMMANDS = tuple(POWERSHELL_CONTROL_SCRIPTS)


def build_control_script(command: str, value: int, dialect: str) -> Optional[str]:
    """Script for *command* in the given shell dialect, wrapped to report failure."""
    table = POWERSHELL_CONTROL_SCRIPTS if dialect == "powershell" else POSIX_CONTROL_SCRIPTS
    builder = table.get(command)
    if builder is None:
        return None
    script = builder(value)
    if dialect == "powershell":
        return (
            "$ErrorActionPreference = 'Stop'; "
            f"try {{ {script} }} catch {{ Write-Output \"Error: $($_.Exception.Message)\" }}"
        )
    return f"{{ {script} ; }} >/dev/null 2>&1 || echo 'Error: {command} failed'"


async def system_control(params: Dict[str, str], context: ActionContext) -> str:
    command = get_param(params, "command", "cmd", default="")
    raw_value = get_param(params, "value", "level", default="0")
    try:
        value = int(float(raw_value))
    except ValueError:
        value = 0

    if command not in SYSTEM_CONTROL_COMMANDS:
        # Tolerate case differences ("VolumeUp", "setvolume").
        command = next((c for c in SYSTEM_CONTROL_COMMANDS if c.lower() == command.lower()), command)
    if command not in SYSTEM_CONTROL_COMMANDS:
        raise ActionHandlerError(f"Unknown command: {command}")
    if context.shell is None:
        raise ActionUnavailable("No shell session available")

    script = build_control_script(command, value, context.shell.dialect.name)
    output = await context.shell.execute_async(script, timeout=context.command_timeout)
    if output and "error" in output.lower():
        raise ActionHandlerError(output.strip())

    logger.info("System control: %s %s", command, value or "")
    if command in ("setVolume", "setBrightness"):
        value = _clamp(value)
    return f"Done: {command}" + (f" ({value})" if value else "")


# =============================================================================
# Web, clipboard, processes
# =============================================================================

def open_url(params: Dict[str, str], context: ActionContext) -> str:
    url = get_param(params, "url", "link")
    if not url:
        raise ActionHandlerError("No URL")

    full_url = url if _HAS_SCHEME.match(url) else f"https://{url}"
    parsed = urlparse(full_url)
    if parsed.scheme.lower() not in ALLOWED_URL_SCHEMES:
        raise ActionRejectedByPolicy(
            f"URL scheme '{parsed.scheme}:' is not allowed. Only http and https are permitted."
        )
    if not parsed.netloc:
        raise ActionHandlerError(f"Invalid URL: {url}")

    if not webbrowser.open(full_url):
        raise ActionHandlerError("No web browser available")
    return f"Opened {url}"


def get_clipboard(params: Dict[str, str], context: ActionContext) -> str:
    try:
        text = pyperclip.paste() or ""
    except pyperclip.PyperclipException as e:
        raise ActionHandlerError(f"Clipboard unavailable: {e}") from e
    if len(text) > CLIPBOARD_READ_LIMIT:
        text = text[:CLIPBOARD_READ_LIMIT] + "..."
    return text or "Clipboard is empty"


def set_clipboard(params: Dict[str, str], context: ActionContext) -> str:
    text = get_param(params, "text", "value", default="")
    try:
        pyperclip.copy(text)
    except pyperclip.PyperclipException as e:
        raise ActionHandlerError(f"Clipboard unavailable: {e}") from e
    return "Copied to clipboard"


def list_processes(params: Dict[str, str], context: ActionContext) -> str:
    """Top 10 processes by CPU (then memory), as JSON."""
    procs = []
    for proc in psutil.process_iter(["pid", "name", "cpu_percent", "memory_percent"]):
        info = proc.info
        procs.append({
            "pid": info["pid"],
            "name": info["name"] or "?",
            "cpu": round(info["cpu_percent"] or 0.0, 1),
            "memory": round(info["memory_percent"] or 0.0, 1),
        })
    procs.sort(key=lambda p: (p["cpu"], p["memory"]), reverse=True)
    return json.dumps(procs[:10])


def get_system_info(params: Dict[str, str], context: ActionContext) -> str:
    mem = psutil.virtual_memory()
    battery = None
    try:
        battery = psutil.sensors_battery()
    except (AttributeError, NotImplementedError, RuntimeError, OSError) as e:
        logger.debug("Battery status unavailable: %s", e)
    uptime_hours = (time.time() - psutil.boot_time()) / 3600

    return json.dumps({
        "cpu": f"{psutil.cpu_percent(interval=0.2):g}%",
        "ramUsed": round(mem.used / 1024 ** 3, 1),
        "ramTotal": round(mem.total / 1024 ** 3, 1),
        "battery": f"{battery.percent:.0f}%" if battery else "N/A",
        "uptime": f"{uptime_hours:.1f} hours",
    })


def get_time(params: Dict[str, str], context: ActionContext) -> str:
    now = datetime.now().astimezone()
    clock = now.strftime("%I:%M %p").lstrip("0")
    date = f"{now.strftime('%A, %B')} {now.day}, {now.year}"
    return json.dumps({
        "iso": now.isoformat(timespec="seconds"),
        "time": clock,
        "date": date,
        "full": f"{date} at {clock}",
    })


# =============================================================================
# Shell
# =============================================================================

async def run_command(params: Dict[str, str], context: ActionContext) -> str:
    script = get_param(params, "script", "command", default="")
    decision = check_command(script)
    if not decision.allowed:
        raise ActionRejectedByPolicy(decision.reason)
    if context.shell is None:
        raise ActionUnavailable("No shell session available")
    return await context.shell.execute_async(script, timeout=context.command_timeout)


def listen(params: Dict[str, str], context: ActionContext) -> str:
    return "Listening"


# =============================================================================
# Registration
# =============================================================================

def register_system_actions(registry: ActionRegistry) -> ActionRegistry:
    registry.register(
        name="searchFiles",
        handler=search_files,
        description="Search apps, files and folders. Use only the name or keywords.",
        params=("query",),
    )
    registry.register(
        name="launchApplication",
        handler=launch_application,
        description="Open an installed application.",
        params=("appName",),
    )
    registry.register(
        name="openFile",
        handler=open_file,
        description="Open a file, path relative to the home folder.",
        params=("filePath",),
    )
    registry.register(
        name="listen",
        handler=listen,
        description="Listen again. Use after asking the user a question or when speech was unclear.",
    )
    registry.register(
        name="systemControl",
        handler=system_control,
        description="System controls. Commands: " + ", ".join(SYSTEM_CONTROL_COMMANDS),
        params=("command", "value"),
    )
    registry.register(
        name="openUrl",
        handler=open_url,
        description="Open a web page. For web searches use https://www.google.com/search?q=<query>.",
        params=("url",),
    )
    registry.register(
        name="getSystemInfo",
        handler=get_system_info,
        description="CPU, RAM, battery and uptime.",
        silent=True,
    )
    registry.register(
        name="getTime",
        handler=get_time,
        description="Current date and time.",
        silent=True,
    )
    registry.register(
        name="getClipboard",
        handler=get_clipboard,
        description="Read clipboard text.",
    )
    registry.register(
        name="setClipboard",
        handler=set_clipboard,
        description="Set clipboard text.",
        params=("text",),
    )
    registry.register(
        name="listProcesses",
        handler=list_processes,
        description="List the top 10 CPU-heavy processes.",
    )
    registry.register(
        name="runCommand",
        handler=run_command,
        description="Run a read-only shell command (listing, dates, environment, math). "
                    "Anything that changes, deletes or downloads is refused.",
        params=("script",),
        aliases=("runPowerShell",),
        silent=True,
    )
    return registry


def build_default_registry() -> ActionRegistry:
    return register_system_actions(ActionRegistry())
