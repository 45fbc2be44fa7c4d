# src/quota_radar/strategies.py
"""OS command strategies for locating the language server.

Each strategy builds the shell commands for one OS family and parses their
output. Parsing lives in module-level pure functions so it can be tested
against captured output without running anything:

- Windows: PowerShell `Get-CimInstance` JSON (preferred) or WMIC list
  format (fallback), ports from `netstat -ano`.
- macOS: `ps -ww -eo pid,ppid,args`, ports from `lsof`.
- Linux: `ps` as above, ports from the first of `lsof`, `ss`, `netstat`
  found on PATH.
"""

from __future__ import annotations

import json
import os
import platform
import re
import shutil
import sys

import structlog

from quota_radar.models import ProcessCandidate

log = structlog.get_logger()

TOKEN_MARKER = "csrf_token"

PROCESS_NAMES = {
    "windows": "language_server_windows_x64.exe",
    "darwin_arm": "language_server_macos_arm",
    "darwin_x64": "language_server_macos",
    "linux": "language_server_linux",
}

_TOKEN_RE = re.compile(r"--csrf_token[=\s]+([A-Za-z0-9-]+)")
_PORT_ARG_RE = re.compile(r"--extension_server_port[=\s]+(\d+)")
_APP_DATA_DIR_RE = re.compile(r"--app_data_dir\s+antigravity\b", re.IGNORECASE)

# Error text that means the current sub-tool cannot run at all
_SWITCH_SIGNATURES = (
    "not recognized",
    "not found",
    "不是内部或外部命令",
    "无法识别",
    "cmdlet",
    "get-ciminstance",
    "exception",
    "异常",
    # Script execution blocked by policy
    "running scripts is disabled",
    "executionpolicy",
    "禁止运行脚本",
)
_TIMEOUT_SIGNATURES = ("timeout", "timed out", "超时")
_EXECUTION_POLICY_SIGNATURES = ("running scripts is disabled", "executionpolicy", "禁止运行脚本")
_WMI_SIGNATURES = ("rpc server", "wmi", "invalid class", "无效类")


# --- Command line fingerprinting ---


def has_product_fingerprint(command_line: str) -> bool:
    """True if the command line identifies the Antigravity build of the server.

    Either the `--app_data_dir antigravity` argument or an `antigravity`
    directory segment in the executable path.
    """
    if _APP_DATA_DIR_RE.search(command_line):
        return True
    lower = command_line.lower()
    return "/antigravity/" in lower or "\\antigravity\\" in lower


def candidate_from_command_line(pid: int, command_line: str, ppid: int = 0) -> ProcessCandidate | None:
    """Build a candidate from a process command line, or None if it doesn't qualify.

    Requires both the token marker and the product fingerprint. The declared
    extension port is optional and defaults to 0.
    """
    if TOKEN_MARKER not in command_line or not has_product_fingerprint(command_line):
        return None
    token_match = _TOKEN_RE.search(command_line)
    if not token_match:
        log.warning("token_extract_failed", pid=pid)
        return None
    port_match = _PORT_ARG_RE.search(command_line)
    return ProcessCandidate(
        pid=pid,
        declared_port=int(port_match.group(1)) if port_match else 0,
        token=token_match.group(1),
        ppid=ppid,
    )


# --- Process list parsers ---


def parse_powershell_processes(stdout: str) -> list[ProcessCandidate]:
    """Parse `Get-CimInstance ... | ConvertTo-Json` output.

    PowerShell emits a bare object for a single match and an array otherwise.
    Non-JSON output yields no candidates.
    """
    text = stdout.strip()
    if not text:
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        log.debug("powershell_json_invalid", error=str(e))
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []

    candidates = []
    for item in data:
        if not isinstance(item, dict):
            continue
        command_line = item.get("CommandLine") or ""
        pid = item.get("ProcessId")
        if not command_line or not pid:
            continue
        candidate = candidate_from_command_line(int(pid), command_line)
        if candidate:
            candidates.append(candidate)

    log.info("powershell_processes_parsed", total=len(data), candidates=len(candidates))
    return candidates


def parse_wmic_processes(stdout: str) -> list[ProcessCandidate]:
    """Parse `wmic ... /format:list` output.

    Records are `Key=Value` lines separated by blank lines. WMIC writes
    `\\r\\r\\n` line endings, so carriage returns are stripped first.
    """
    text = stdout.replace("\r", "")
    candidates = []
    for block in re.split(r"\n\s*\n", text):
        if not block.strip():
            continue
        pid_match = re.search(r"^ProcessId=(\d+)\s*$", block, re.MULTILINE)
        cmd_match = re.search(r"^CommandLine=(.+)$", block, re.MULTILINE)
        if not pid_match or not cmd_match:
            continue
        candidate = candidate_from_command_line(int(pid_match.group(1)), cmd_match.group(1).strip())
        if candidate:
            candidates.append(candidate)

    log.info("wmic_processes_parsed", candidates=len(candidates))
    return candidates


def parse_windows_processes(stdout: str, prefer_json: bool = True) -> list[ProcessCandidate]:
    """Parse Windows process output, detecting JSON vs WMIC list format."""
    text = stdout.strip()
    if prefer_json or text.startswith(("{", "[")):
        if text.startswith(("{", "[")) or not text:
            return parse_powershell_processes(text)
        # PowerShell was requested but something else came back
        log.debug("powershell_output_not_json", head=text[:80])
    return parse_wmic_processes(stdout)


def parse_ps_processes(stdout: str, current_pid: int | None = None) -> list[ProcessCandidate]:
    """Parse `ps -ww -eo pid,ppid,args` lines.

    Candidates spawned by the current process sort first; the rest keep
    their listing order.
    """
    if current_pid is None:
        current_pid = os.getpid()

    candidates = []
    for line in stdout.splitlines():
        parts = line.strip().split(None, 2)
        if len(parts) < 3:
            continue
        try:
            pid = int(parts[0])
            ppid = int(parts[1])
        except ValueError:
            continue  # header row
        candidate = candidate_from_command_line(pid, parts[2], ppid=ppid)
        if candidate:
            log.debug("ps_candidate", pid=pid, ppid=ppid, declared_port=candidate.declared_port)
            candidates.append(candidate)

    # Stable sort keeps listing order within each class
    return sorted(candidates, key=lambda c: c.ppid != current_pid)


# --- Port parsers ---


def _unique_sorted(ports: list[int]) -> list[int]:
    return sorted(set(ports))


def parse_windows_netstat_ports(stdout: str, pid: int | None = None) -> list[int]:
    """Parse LISTENING rows of `netstat -ano`.

    `findstr <pid>` matches substrings, so when pid is given the owning-PID
    column is checked exactly.
    """
    row_re = re.compile(
        r"(?:127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):(\d+)\s+\S+\s+LISTENING\s+(\d+)", re.IGNORECASE
    )
    ports = []
    for match in row_re.finditer(stdout):
        if pid is not None and int(match.group(2)) != pid:
            continue
        ports.append(int(match.group(1)))
    return _unique_sorted(ports)


def parse_lsof_ports(stdout: str, pid: int | None = None) -> list[int]:
    """Parse `lsof -iTCP -sTCP:LISTEN -n -P` rows.

    Row format: `language_ 15684 user 12u IPv4 0x31... 0t0 TCP *:53125 (LISTEN)`
    """
    port_re = re.compile(r"(?:\*|[\d.]+|\[[\da-fA-F:]*\]):(\d+)\s+\(LISTEN\)")
    ports = []
    for line in stdout.splitlines():
        if "(LISTEN)" not in line:
            continue
        if pid is not None:
            fields_ = line.split()
            if len(fields_) < 2 or fields_[1] != str(pid):
                continue
        match = port_re.search(line)
        if match:
            ports.append(int(match.group(1)))
    return _unique_sorted(ports)


def parse_ss_ports(stdout: str) -> list[int]:
    """Parse `ss -tlnp` rows.

    Row format: `LISTEN 0 4096 127.0.0.1:42100 0.0.0.0:* users:(("language_server",pid=1234,fd=9))`
    """
    ss_re = re.compile(r"LISTEN\s+\d+\s+\d+\s+(?:\*|[\d.]+|\[[\da-fA-F:]*\]):(\d+)", re.IGNORECASE)
    return _unique_sorted([int(m.group(1)) for m in ss_re.finditer(stdout)])


def parse_netstat_unix_ports(stdout: str, pid: int | None = None) -> list[int]:
    """Parse `netstat -tulpn` rows.

    Row format: `tcp 0 0 127.0.0.1:42100 0.0.0.0:* LISTEN 1234/language_serv`
    """
    row_re = re.compile(
        r"^tcp6?\s+\d+\s+\d+\s+(?:[\d.]+|\[?[\da-fA-F:]*\]?):(\d+)\s+\S+\s+LISTEN\s+(\d+)/",
        re.MULTILINE,
    )
    ports = []
    for match in row_re.finditer(stdout):
        if pid is not None and int(match.group(2)) != pid:
            continue
        ports.append(int(match.group(1)))
    return _unique_sorted(ports)


def parse_linux_ports(stdout: str, pid: int | None = None) -> list[int]:
    """Parse Linux port output from whichever tool produced it."""
    return (
        parse_ss_ports(stdout)
        or parse_lsof_ports(stdout, pid)
        or parse_netstat_unix_ports(stdout, pid)
    )


# --- Strategies ---


class CommandStrategy:
    """Command builder and parser for one OS family.

    Subclasses may offer two interchangeable process-listing sub-tools;
    `switch_sub_tool()` flips between them.
    """

    platform: str = ""

    def __init__(self, process_name: str):
        self.process_name = process_name

    @property
    def sub_tool(self) -> str:
        """Name of the process-listing tool currently in use."""
        raise NotImplementedError

    @property
    def can_switch(self) -> bool:
        """Whether an alternate process-listing tool exists."""
        return False

    def switch_sub_tool(self) -> str:
        """Flip to the alternate sub-tool. Returns the new tool name."""
        raise NotImplementedError

    def is_switchable_error(self, message: str) -> bool:
        """True if the error text means the current sub-tool cannot run."""
        return False

    def is_cold_start_timeout(self, message: str) -> bool:
        """True if the error is a timeout worth one free retry."""
        return False

    def list_candidates(self) -> str:
        """Command listing processes named like the server, with full command lines."""
        raise NotImplementedError

    def list_candidates_by_keyword(self) -> str | None:
        """Broader command matching only the token marker, or None if unsupported."""
        return None

    def parse_candidates(self, output: str) -> list[ProcessCandidate]:
        raise NotImplementedError

    def list_ports(self, pid: int) -> str:
        """Command listing TCP listening sockets owned by pid."""
        raise NotImplementedError

    def parse_ports(self, output: str, pid: int | None = None) -> list[int]:
        raise NotImplementedError

    def diagnostics(self) -> str:
        """Command listing anything loosely named like the product."""
        raise NotImplementedError

    def error_hints(self, message: str) -> list[str]:
        """Operator hints for a recognized failure message."""
        return []

    def troubleshooting(self) -> list[str]:
        """Generic operator checklist when discovery fails entirely."""
        return [
            "Ensure Antigravity is running",
            f"Check that {self.process_name} appears in the process list",
            "Try restarting Antigravity",
        ]


class WindowsStrategy(CommandStrategy):
    """PowerShell CIM queries, falling back to WMIC."""

    platform = "windows"

    def __init__(self, process_name: str = PROCESS_NAMES["windows"]):
        super().__init__(process_name)
        self.use_powershell = True

    @property
    def sub_tool(self) -> str:
        return "powershell" if self.use_powershell else "wmic"

    @property
    def can_switch(self) -> bool:
        return True

    def switch_sub_tool(self) -> str:
        self.use_powershell = not self.use_powershell
        return self.sub_tool

    def is_switchable_error(self, message: str) -> bool:
        lower = message.lower()
        return any(sig in lower for sig in _SWITCH_SIGNATURES)

    def is_cold_start_timeout(self, message: str) -> bool:
        lower = message.lower()
        return self.use_powershell and any(sig in lower for sig in _TIMEOUT_SIGNATURES)

    def list_candidates(self) -> str:
        name = self.process_name
        if self.use_powershell:
            return (
                "powershell -NoProfile -Command "
                f"\"Get-CimInstance Win32_Process -Filter 'name=''{name}''' "
                '| Select-Object ProcessId,CommandLine | ConvertTo-Json"'
            )
        return f"wmic process where \"name='{name}'\" get ProcessId,CommandLine /format:list"

    def list_candidates_by_keyword(self) -> str | None:
        # WMIC cannot filter on CommandLine
        if not self.use_powershell:
            return None
        return (
            'powershell -NoProfile -Command "Get-CimInstance Win32_Process '
            f"| Where-Object {{ $_.CommandLine -match '{TOKEN_MARKER}' }} "
            '| Select-Object ProcessId,Name,CommandLine | ConvertTo-Json"'
        )

    def parse_candidates(self, output: str) -> list[ProcessCandidate]:
        return parse_windows_processes(output, prefer_json=self.use_powershell)

    def list_ports(self, pid: int) -> str:
        return f'netstat -ano | findstr "{pid}" | findstr "LISTENING"'

    def parse_ports(self, output: str, pid: int | None = None) -> list[int]:
        return parse_windows_netstat_ports(output, pid)

    def diagnostics(self) -> str:
        if self.use_powershell:
            return (
                'powershell -NoProfile -Command "Get-Process '
                "| Where-Object { $_.ProcessName -match 'language|antigravity' } "
                '| Select-Object Id,ProcessName,Path | Format-Table -AutoSize"'
            )
        return (
            "wmic process where \"name like '%language%' or name like '%antigravity%'\" "
            "get ProcessId,Name,CommandLine /format:list"
        )

    def error_hints(self, message: str) -> list[str]:
        lower = message.lower()
        hints = []
        if any(sig in lower for sig in _EXECUTION_POLICY_SIGNATURES):
            hints.append(
                "PowerShell execution policy may be blocking scripts. Try: "
                "Set-ExecutionPolicy -Scope CurrentUser -ExecutionPolicy RemoteSigned"
            )
        if any(sig in lower for sig in _WMI_SIGNATURES):
            hints.append("WMI service may not be running. Try: net start winmgmt")
        return hints

    def troubleshooting(self) -> list[str]:
        return super().troubleshooting() + [
            "If PowerShell errors occur, try: "
            "Set-ExecutionPolicy -Scope CurrentUser -ExecutionPolicy RemoteSigned",
            "If WMI errors occur, try: net start winmgmt (run as admin)",
        ]


_LSOF_CMD = 'lsof -iTCP -sTCP:LISTEN -n -P 2>/dev/null | grep -E "^\\S+\\s+{pid}\\s"'
_SS_CMD = 'ss -tlnp 2>/dev/null | grep "pid={pid},"'
_NETSTAT_CMD = "netstat -tulpn 2>/dev/null | grep {pid}"


class UnixStrategy(CommandStrategy):
    """`ps` for processes; lsof, ss or netstat for ports."""

    def __init__(self, platform_name: str, process_name: str):
        super().__init__(process_name)
        self.platform = platform_name
        self._port_tool: str | None = None
        self._port_tool_checked = False

    @property
    def sub_tool(self) -> str:
        return "ps"

    @property
    def port_tool(self) -> str | None:
        """Port listing tool, detected on first use (lsof > ss > netstat)."""
        if self.platform == "darwin":
            return "lsof"
        if not self._port_tool_checked:
            self._port_tool_checked = True
            self._port_tool = next(
                (tool for tool in ("lsof", "ss", "netstat") if shutil.which(tool)), None
            )
            if self._port_tool:
                log.info("port_tool_detected", tool=self._port_tool)
            else:
                log.warning("port_tool_missing", tried="lsof/ss/netstat")
        return self._port_tool

    def list_candidates(self) -> str:
        # -ww keeps long command lines untruncated
        return f'ps -ww -eo pid,ppid,args | grep "{self.process_name}" | grep -v grep'

    def parse_candidates(self, output: str) -> list[ProcessCandidate]:
        return parse_ps_processes(output)

    def list_ports(self, pid: int) -> str:
        tool = self.port_tool
        if tool == "lsof":
            return _LSOF_CMD.format(pid=pid)
        if tool == "ss":
            return _SS_CMD.format(pid=pid)
        if tool == "netstat":
            return _NETSTAT_CMD.format(pid=pid)
        return " || ".join(cmd.format(pid=pid) for cmd in (_SS_CMD, _LSOF_CMD, _NETSTAT_CMD))

    def parse_ports(self, output: str, pid: int | None = None) -> list[int]:
        if self.platform == "darwin":
            return parse_lsof_ports(output, pid)
        return parse_linux_ports(output, pid)

    def diagnostics(self) -> str:
        return "ps aux | grep -E 'language|antigravity' | grep -v grep"

    def troubleshooting(self) -> list[str]:
        return super().troubleshooting() + [
            "Port detection needs lsof, ss or netstat on PATH",
            "Try manually: ps aux | grep -E 'language|antigravity'",
        ]


def select_strategy(system: str | None = None, machine: str | None = None) -> CommandStrategy:
    """Pick the strategy for the running OS. Called once at startup."""
    system = (system or sys.platform).lower()
    machine = (machine or platform.machine()).lower()

    if system.startswith("win"):
        strategy: CommandStrategy = WindowsStrategy()
    elif system == "darwin":
        key = "darwin_arm" if machine in ("arm64", "aarch64") else "darwin_x64"
        strategy = UnixStrategy("darwin", PROCESS_NAMES[key])
    else:
        strategy = UnixStrategy("linux", PROCESS_NAMES["linux"])

    log.debug("strategy_selected", platform=strategy.platform, process=strategy.process_name)
    return strategy
