"""Subprocess execution with caching and safety features.

This is the command runner every adapter, probe and identity strategy
sits on. It runs an argv list with an enforced timeout, captures output,
and reports failure either as a ``SubprocessError`` (``safe_run``) or as
``None`` (``run_command``) for best-effort callers.

Security Note:
    All commands are validated against ALLOWED_SUBPROCESS_COMMANDS and
    shell=False is always used, so SSIDs and passwords are passed as
    single argv entries and never interpreted by a shell.

Usage:
    from config.subprocess_cache import safe_run, run_command, get_subprocess_cache

    # Raise on failure
    result = safe_run(['arp', '-a'])

    # Absorb failure (returns stdout or None)
    output = run_command(['iwgetid', '-r'])

    # With caching (for repeated calls)
    cache = get_subprocess_cache()
    result = cache.run(['nmcli', '--version'], ttl=3600.0)
"""

# nosec B404 - subprocess usage is required and validated via allowlist
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from config.constants import ALLOWED_SUBPROCESS_COMMANDS, INTERVALS
from config.exceptions import SubprocessError
from config.logging_config import get_logger, log_command_result

logger = get_logger(__name__)


@dataclass
class CachedResult:
    """Cached subprocess result with metadata."""

    result: subprocess.CompletedProcess
    timestamp: float
    duration_ms: float

    def is_expired(self, ttl: float) -> bool:
        """Check if this cached result has expired."""
        return (time.time() - self.timestamp) >= ttl


class SubprocessCache:
    """Caches subprocess results to reduce redundant system calls.

    Thread-safe cache for subprocess.run() results. Useful for commands
    that are called frequently but change slowly (tool lookups, interface
    listings).

    Attributes:
        default_ttl: Default time-to-live for cached results in seconds.
        max_cache_size: Maximum number of cached results to keep.
    """

    def __init__(self, default_ttl: float = 5.0, max_cache_size: int = 50):
        self.default_ttl = default_ttl
        self.max_cache_size = max_cache_size
        self._cache: Dict[Tuple[str, ...], CachedResult] = {}
        self._lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
        }

    def _make_key(self, cmd: List[str]) -> Tuple[str, ...]:
        """Create a hashable cache key from command."""
        return tuple(cmd)

    def _cleanup_expired(self) -> None:
        """Remove expired entries from cache."""
        expired_keys = [
            key
            for key, cached in self._cache.items()
            if cached.is_expired(self.default_ttl * 2)
        ]
        for key in expired_keys:
            del self._cache[key]

        # If still too large, remove oldest entries
        if len(self._cache) > self.max_cache_size:
            sorted_items = sorted(self._cache.items(), key=lambda x: x[1].timestamp)
            for key, _ in sorted_items[: len(self._cache) - self.max_cache_size]:
                del self._cache[key]

    def run(
        self,
        cmd: List[str],
        ttl: Optional[float] = None,
        bypass_cache: bool = False,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> subprocess.CompletedProcess:
        """Run a subprocess command with optional caching.

        Args:
            cmd: Command and arguments as list.
            ttl: Time-to-live for cache in seconds. Uses default if not specified.
            bypass_cache: If True, always run the command fresh.
            timeout: Command timeout in seconds.
            **kwargs: Additional arguments passed to subprocess.run().

        Returns:
            subprocess.CompletedProcess with command output.

        Raises:
            SubprocessError: If the command cannot be started or times out.
        """
        ttl = ttl if ttl is not None else self.default_ttl
        timeout = timeout or INTERVALS.SUBPROCESS_TIMEOUT_SECONDS
        key = self._make_key(cmd)

        if not bypass_cache:
            with self._lock:
                if key in self._cache and not self._cache[key].is_expired(ttl):
                    self._stats["hits"] += 1
                    logger.debug(f"Cache hit for: {cmd[0]}")
                    return self._cache[key].result

        with self._lock:
            self._stats["misses"] += 1
        start_time = time.time()

        try:
            kwargs.setdefault("capture_output", True)
            kwargs.setdefault("text", True)
            kwargs.setdefault("errors", "replace")
            kwargs["timeout"] = timeout

            result = subprocess.run(cmd, **kwargs)  # nosec B603 - Commands validated via allowlist
            duration_ms = (time.time() - start_time) * 1000

            log_command_result(logger, cmd, result.returncode, duration_ms)

            if not bypass_cache:
                with self._lock:
                    self._cache[key] = CachedResult(
                        result=result, timestamp=time.time(), duration_ms=duration_ms
                    )
                    self._cleanup_expired()

            return result

        except subprocess.TimeoutExpired as e:
            with self._lock:
                self._stats["errors"] += 1
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(f"Command timed out after {duration_ms:.0f}ms: {cmd[0]}")
            partial = e.stdout
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            raise SubprocessError(
                f"Command timed out after {timeout}s",
                command=cmd,
                stdout=partial,
                details={"timeout": timeout},
            ) from e

        except FileNotFoundError as e:
            with self._lock:
                self._stats["errors"] += 1
            logger.debug(f"Command not found: {cmd[0]}")
            raise SubprocessError(f"Command not found: {cmd[0]}", command=cmd) from e

        except OSError as e:
            with self._lock:
                self._stats["errors"] += 1
            logger.error(f"Subprocess error for {cmd[0]}: {e}")
            raise SubprocessError(f"Subprocess error: {e}", command=cmd) from e

    def invalidate(self, cmd: Optional[List[str]] = None) -> None:
        """Invalidate cached results.

        Args:
            cmd: Specific command to invalidate. If None, clears entire cache.
        """
        with self._lock:
            if cmd is None:
                self._cache.clear()
                logger.debug("Cleared entire subprocess cache")
            else:
                self._cache.pop(self._make_key(cmd), None)

    def get_stats(self) -> dict:
        """Get cache statistics."""
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            hit_rate = (self._stats["hits"] / total * 100) if total > 0 else 0
            return {
                **self._stats,
                "cache_size": len(self._cache),
                "hit_rate_percent": round(hit_rate, 1),
            }


# Global cache instance
_global_cache: Optional[SubprocessCache] = None


def get_subprocess_cache() -> SubprocessCache:
    """Get or create the global subprocess cache."""
    global _global_cache
    if _global_cache is None:
        _global_cache = SubprocessCache()
    return _global_cache


def _base_command(cmd: List[str]) -> str:
    """Return the bare program name, e.g. 'netsh' for 'C:\\...\\netsh.exe'."""
    name = Path(cmd[0].replace("\\", "/")).name
    if name.lower().endswith(".exe"):
        name = name[:-4]
    return name


def safe_run(
    cmd: List[str], timeout: Optional[float] = None, check_allowed: bool = True, **kwargs
) -> subprocess.CompletedProcess:
    """Run a subprocess command with safety checks.

    This is the recommended way to run subprocesses in NetGuard.
    It validates the command against an allowlist and ensures safe defaults.

    Args:
        cmd: Command and arguments as list.
        timeout: Command timeout in seconds.
        check_allowed: If True, validate command is in allowlist.
        **kwargs: Additional arguments passed to subprocess.run().

    Returns:
        subprocess.CompletedProcess with command output.

    Raises:
        SubprocessError: If command is not allowed, cannot start, or times out.

    Example:
        >>> result = safe_run(['arp', '-a'])
        >>> if result.returncode == 0:
        ...     print(result.stdout)
    """
    if not cmd:
        raise SubprocessError("Empty command", command=cmd)

    base_cmd = _base_command(cmd)
    if check_allowed and base_cmd not in ALLOWED_SUBPROCESS_COMMANDS:
        raise SubprocessError(
            f"Command not in allowlist: {base_cmd}",
            command=cmd,
            details={"allowed": sorted(ALLOWED_SUBPROCESS_COMMANDS)},
        )

    cache = get_subprocess_cache()
    return cache.run(cmd, ttl=0, bypass_cache=True, timeout=timeout, **kwargs)


def run_command(cmd: List[str], timeout: Optional[float] = None) -> Optional[str]:
    """Run a command and return its stdout, or None on any failure.

    Non-zero exit codes, timeouts and missing binaries all produce None.
    Used by best-effort callers that degrade to the next strategy.

    Example:
        >>> ssid = run_command(['iwgetid', '-r'])
    """
    try:
        result = safe_run(cmd, timeout=timeout)
    except SubprocessError as e:
        logger.debug(f"{cmd[0]} unavailable: {e.message}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout


def run_with_fallback(
    commands: List[List[str]], timeout: Optional[float] = None
) -> Optional[subprocess.CompletedProcess]:
    """Try multiple commands in order until one succeeds.

    Args:
        commands: List of commands to try in order.
        timeout: Timeout for each command.

    Returns:
        Result from first successful command, or None if all fail.

    Example:
        >>> result = run_with_fallback([
        ...     ['ip', 'neigh', 'show'],
        ...     ['arp', '-an'],
        ... ])
    """
    for cmd in commands:
        try:
            result = safe_run(cmd, timeout=timeout)
            if result.returncode == 0:
                return result
        except SubprocessError as e:
            logger.debug(f"Fallback command failed: {cmd[0]} - {e}")
            continue

    return None


class ToolChecker:
    """Check availability of external tools.

    Results are cached for the process lifetime since installed tools
    don't change during runtime.
    """

    _cache: Dict[str, bool] = {}
    _lock = threading.Lock()

    @classmethod
    def has_tool(cls, tool_name: str) -> bool:
        """Return True if ``tool_name`` resolves on PATH (or is an absolute path that exists)."""
        with cls._lock:
            if tool_name in cls._cache:
                return cls._cache[tool_name]

        if "/" in tool_name:
            available = Path(tool_name).exists()
        else:
            available = shutil.which(tool_name) is not None

        with cls._lock:
            cls._cache[tool_name] = available
        return available

    @classmethod
    def reset(cls) -> None:
        """Forget cached lookups (used by tests)."""
        with cls._lock:
            cls._cache.clear()
