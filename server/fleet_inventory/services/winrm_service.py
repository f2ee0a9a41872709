"""WinRM service for running PowerShell against management servers and VDI hosts."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Iterable, Iterator, List, Optional

from pypsrp.exceptions import (
    AuthenticationError,
    WinRMError,
    WinRMTransportError as PyWinRMTransportError,
)
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan

from ..core.config import settings

logger = logging.getLogger(__name__)


class WinRMServiceError(RuntimeError):
    """Base exception for WinRM service failures."""


class WinRMAuthenticationError(WinRMServiceError):
    """Raised when authentication to a host fails."""


class WinRMTransportError(WinRMServiceError):
    """Raised for lower-level transport failures (host down, port closed, DNS)."""


class WinRMCommandError(WinRMServiceError):
    """Raised when a command exits non-zero or returns unparsable output."""

    def __init__(self, hostname: str, message: str, exit_code: Optional[int] = None):
        super().__init__(f"{hostname}: {message}")
        self.hostname = hostname
        self.exit_code = exit_code


def _format_output_preview(output: str, *, max_length: int = 400) -> str:
    """Return a newline-prefixed preview of command output."""
    if not output:
        return ""

    sanitized = output.replace("\r\n", "\n").strip()
    if not sanitized:
        return ""

    if len(sanitized) > max_length:
        preview = sanitized[: max_length - 3] + "..."
    else:
        preview = sanitized

    return "\n" + preview


def _stringify(item: Any) -> str:
    """Best-effort string conversion for PSRP output and error records."""

    if item is None:
        return ""
    if isinstance(item, str):
        return item

    formatter = getattr(item, "to_string", None)
    if isinstance(formatter, str) and formatter.strip():
        return formatter
    if callable(formatter):
        try:
            text = formatter()
            if text:
                return str(text)
        except Exception:  # pragma: no cover
            logger.debug("Failed to format PSRP object via to_string", exc_info=True)

    return str(item)


class WinRMService:
    """Run PowerShell over PSRP with one session per operation."""

    _EXIT_SENTINEL: str = "__FLEET_INVENTORY_EXIT_CODE__:"

    @contextmanager
    def _session(self, hostname: str, timeout: Optional[float]) -> Iterator[RunspacePool]:
        """Yield an opened runspace pool for the target host."""

        wsman = self._create_session(hostname, timeout)
        pool = self._open_runspace_pool(hostname, wsman)
        try:
            yield pool
        finally:
            try:
                pool.close()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close runspace pool on %s", hostname, exc_info=True)
            finally:
                self._dispose_session(wsman)

    def _create_session(self, hostname: str, timeout: Optional[float]) -> WSMan:
        """Create a new WSMan session using configured credentials."""

        operation_timeout = float(settings.winrm_operation_timeout)
        read_timeout = float(settings.winrm_read_timeout)
        connection_timeout = float(settings.winrm_connection_timeout)
        if timeout is not None:
            operation_timeout = min(operation_timeout, timeout)
            connection_timeout = min(connection_timeout, timeout)
            read_timeout = min(read_timeout, timeout + 1.0)

        # WSMan requires read_timeout > operation_timeout
        operation_timeout = int(max(1.0, operation_timeout))
        read_timeout = int(max(operation_timeout + 1, read_timeout))
        connection_timeout = int(max(1.0, connection_timeout))

        logger.debug(
            "Creating WinRM (PSRP) session to %s (port=%s, transport=%s, connection=%ss, operation=%ss, read=%ss)",
            hostname,
            settings.winrm_port,
            settings.winrm_transport,
            connection_timeout,
            operation_timeout,
            read_timeout,
        )

        try:
            return WSMan(
                hostname,
                port=settings.winrm_port,
                username=settings.winrm_username,
                password=settings.winrm_password,
                auth=settings.winrm_transport,
                ssl=settings.winrm_port == 5986,
                cert_validation=False,
                connection_timeout=connection_timeout,
                operation_timeout=operation_timeout,
                read_timeout=read_timeout,
            )
        except AuthenticationError as exc:  # pragma: no cover - network heavy
            logger.error("Authentication failed while connecting to %s: %s", hostname, exc)
            raise WinRMAuthenticationError(str(exc)) from exc
        except (PyWinRMTransportError, WinRMError) as exc:  # pragma: no cover - network heavy
            logger.error("Failed to create WSMan session to %s: %s", hostname, exc)
            raise WinRMTransportError(str(exc)) from exc

    def _open_runspace_pool(self, hostname: str, wsman: WSMan) -> RunspacePool:
        """Open a runspace pool and translate connection errors."""

        start_time = perf_counter()
        pool = RunspacePool(wsman)
        try:
            pool.open()
        except AuthenticationError as exc:  # pragma: no cover - network heavy
            self._dispose_session(wsman)
            raise WinRMAuthenticationError(str(exc)) from exc
        except (PyWinRMTransportError, WinRMError, OSError) as exc:  # pragma: no cover - network heavy
            self._dispose_session(wsman)
            raise WinRMTransportError(str(exc)) from exc

        logger.debug(
            "Runspace pool on %s opened in %.2fs", hostname, perf_counter() - start_time
        )
        return pool

    def _dispose_session(self, session: WSMan) -> None:
        """Attempt to close transport resources for a WSMan session."""

        closer = getattr(session, "close", None)
        if callable(closer):
            try:
                closer()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close WSMan session cleanly", exc_info=True)

    def execute_ps_command(
        self,
        hostname: str,
        command: str,
        *,
        timeout: Optional[float] = None,
    ) -> tuple[str, str, int]:
        """Execute a PowerShell command and return ``(stdout, stderr, exit_code)``."""

        truncated = command.replace("\n", " ")
        if len(truncated) > 120:
            truncated = f"{truncated[:117]}..."
        logger.info("Executing PowerShell command on %s: %s", hostname, truncated)
        logger.debug("Full PowerShell command on %s: %s", hostname, command)

        script = self._wrap_command(command)
        start_time = perf_counter()

        with self._session(hostname, timeout) as pool:
            ps = PowerShell(pool)
            ps.add_script(script)
            try:
                ps.invoke()
            except AuthenticationError as exc:  # pragma: no cover - network heavy
                raise WinRMAuthenticationError(str(exc)) from exc
            except (PyWinRMTransportError, WinRMError, OSError) as exc:  # pragma: no cover - network heavy
                logger.error("WinRM execution failed on %s: %s", hostname, exc)
                raise WinRMTransportError(str(exc)) from exc

            stdout_lines, exit_code = self._split_exit_code(ps.output)
            stderr_lines = [_stringify(record) for record in ps.streams.error]
            if exit_code is None:
                exit_code = 1 if ps.had_errors else 0

        stdout = self._join_lines(stdout_lines)
        stderr = self._join_lines(stderr_lines)

        logger.debug(
            "Command on %s completed in %.2fs with exit code %s (stdout=%d bytes, stderr=%d bytes)",
            hostname,
            perf_counter() - start_time,
            exit_code,
            len(stdout.encode("utf-8")),
            len(stderr.encode("utf-8")),
        )
        stderr_preview = _format_output_preview(stderr)
        if stderr_preview and exit_code != 0:
            logger.warning("Command stderr preview on %s:%s", hostname, stderr_preview)

        return stdout, stderr, exit_code

    def execute_ps_json(
        self,
        hostname: str,
        command: str,
        *,
        timeout: Optional[float] = None,
        depth: int = 4,
    ) -> List[Any]:
        """Run ``command`` piped through ConvertTo-Json and return a list of objects."""

        json_command = f"@({command}) | ConvertTo-Json -Depth {depth} -Compress"
        stdout, stderr, exit_code = self.execute_ps_command(hostname, json_command, timeout=timeout)

        if exit_code != 0:
            preview = (stderr.strip() or stdout.strip())[:400]
            raise WinRMCommandError(hostname, f"command failed (exit={exit_code}): {preview}", exit_code)

        raw_output = stdout.strip().lstrip("\ufeff")
        if not raw_output:
            return []

        try:
            payload = json.loads(raw_output)
        except json.JSONDecodeError as exc:
            logger.debug("Raw payload from %s: %s", hostname, stdout)
            raise WinRMCommandError(hostname, f"unparsable JSON output: {exc}") from exc

        if payload is None:
            return []
        if isinstance(payload, list):
            return payload
        return [payload]

    def _split_exit_code(self, output: Iterable[Any]) -> tuple[List[str], Optional[int]]:
        lines: List[str] = []
        exit_code: Optional[int] = None
        for item in output:
            text = _stringify(item)
            if text.startswith(self._EXIT_SENTINEL):
                parsed = text[len(self._EXIT_SENTINEL) :].strip()
                try:
                    exit_code = int(parsed)
                except ValueError:
                    logger.warning("Received malformed exit code sentinel '%s'", parsed)
                continue
            lines.append(text)
        return lines, exit_code

    @staticmethod
    def _join_lines(lines: Iterable[str]) -> str:
        return "\n".join(line.rstrip("\r\n") for line in lines if line)

    def _wrap_command(self, command: str) -> str:
        """Embed the requested command in exit-code handling boilerplate."""

        sentinel_line = f'Write-Output "{self._EXIT_SENTINEL}$FleetExitCode"'
        boilerplate = [
            "$ErrorActionPreference = 'Stop'",
            "$ProgressPreference = 'SilentlyContinue'",
            "$FleetExitCode = 0",
            "try {",
            "    & {",
            "        " + command.replace("\n", "\n        "),
            "    }",
            "} catch {",
            "    $FleetExitCode = 1",
            "    Write-Error $_ -ErrorAction Continue",
            "}",
            sentinel_line,
        ]
        return "\n".join(boilerplate)

    @staticmethod
    def ps_quote(value: str) -> str:
        """Return a single-quoted PowerShell literal."""

        escaped = value.replace("'", "''")
        return f"'{escaped}'"


# Global WinRM service instance
winrm_service = WinRMService()

__all__ = [
    "WinRMService",
    "winrm_service",
    "WinRMServiceError",
    "WinRMAuthenticationError",
    "WinRMTransportError",
    "WinRMCommandError",
]
