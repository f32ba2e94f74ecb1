"""
Toolgate Path Sandbox

Every path handed to a filesystem operation must first pass through
PathSandbox.validate() for the session's AllowedDirectorySet.

Validation flow:
1. Expand a leading ``~`` and resolve relative paths against the
   working directory
2. Check the intended path is inside an allowed root (rejects ``..``
   escapes and absolute overrides)
3. Resolve symlinks: an existing path is re-checked at its real target,
   a missing path is re-checked at its nearest existing ancestor
4. Optionally require the path to exist (PathNotFoundError, which is
   distinct from a SandboxViolationError)

The only I/O performed is stat/readlink via os.path. A validated path
can still be swapped between validation and use; that window is not
closed here.
"""

from __future__ import annotations

import os
import shlex
import tempfile
from collections.abc import Iterable, Iterator
from pathlib import Path

from toolgate.exceptions import PathNotFoundError, SandboxViolationError


# Device files a shell command may reference without touching the workspace
SAFE_DEVICE_PATHS = ("/dev/null", "/dev/stdin", "/dev/stdout", "/dev/stderr", "/dev/tty")


def expand_home(path: str) -> str:
    """Expand only a leading ``~`` or ``~/``; ``~user`` is left alone."""
    if path == "~" or path.startswith("~/"):
        return str(Path.home()) + path[1:]
    return path


def _is_descendant(target: str, root: str) -> bool:
    try:
        rel = os.path.relpath(target, root)
    except ValueError:
        # Different drives on Windows
        return False
    if rel == os.curdir:
        return True
    return rel != os.pardir and not rel.startswith(os.pardir + os.sep) and not os.path.isabs(rel)


class AllowedDirectorySet:
    """Ordered, immutable list of canonical absolute sandbox roots.

    Roots that exist are canonicalized with realpath so a symlinked
    workspace root still matches its own resolved children.
    """

    def __init__(self, roots: Iterable[str | os.PathLike[str]], working_dir: str | os.PathLike[str] | None = None):
        base = os.path.abspath(os.fspath(working_dir)) if working_dir is not None else os.getcwd()
        canonical: list[str] = []
        for root in roots:
            resolved = self._canonicalize(os.fspath(root), base)
            if resolved not in canonical:
                canonical.append(resolved)
        if not canonical:
            raise ValueError("AllowedDirectorySet requires at least one root")
        self._roots = tuple(canonical)
        self._working_dir = self._canonicalize(base, base)

    @staticmethod
    def _canonicalize(path: str, base: str) -> str:
        expanded = expand_home(path)
        absolute = os.path.normpath(os.path.join(base, expanded))
        if os.path.isdir(absolute):
            return os.path.realpath(absolute)
        return absolute

    @property
    def roots(self) -> tuple[str, ...]:
        return self._roots

    @property
    def working_dir(self) -> str:
        return self._working_dir

    def contains(self, absolute_path: str) -> bool:
        """Pure string check: is the path at or below some root?"""
        return any(_is_descendant(absolute_path, root) for root in self._roots)

    def __iter__(self) -> Iterator[str]:
        return iter(self._roots)

    def __len__(self) -> int:
        return len(self._roots)

    def __repr__(self) -> str:
        return f"AllowedDirectorySet({list(self._roots)!r})"


class PathSandbox:
    """Validates user- or model-supplied paths against allowed roots."""

    def __init__(self, allowed: AllowedDirectorySet):
        self._allowed = allowed

    @property
    def allowed(self) -> AllowedDirectorySet:
        return self._allowed

    @property
    def working_dir(self) -> str:
        return self._allowed.working_dir

    def resolve(self, requested: str, cwd: str | None = None) -> str:
        """Absolute, normalized form of a path without any validation."""
        expanded = expand_home(requested)
        return os.path.normpath(os.path.join(cwd or self.working_dir, expanded))

    def validate(self, requested: str, *, require_existence: bool = True, cwd: str | None = None) -> str:
        """Return the canonical path for `requested` or raise.

        Raises:
            SandboxViolationError: the path, its symlink target or its
                nearest existing ancestor lies outside every allowed root.
            PathNotFoundError: require_existence is set and nothing exists
                at the validated path.
        """
        if not requested or "\x00" in requested:
            raise SandboxViolationError(requested, "Access denied - empty or malformed path")

        absolute = self.resolve(requested, cwd)
        roots = ", ".join(self._allowed.roots)

        if not self._allowed.contains(absolute):
            raise SandboxViolationError(
                requested,
                f"Access denied - path outside allowed directories: {absolute} not in any of {roots}",
                details={"resolved": absolute},
            )

        if os.path.lexists(absolute):
            real = os.path.realpath(absolute)
            if not self._allowed.contains(real):
                raise SandboxViolationError(
                    requested,
                    f"Access denied - symlink target outside allowed directories: {absolute} -> {real}",
                    details={"resolved": real},
                )
            validated = real
        else:
            validated = self._validate_missing(requested, absolute)

        if require_existence and not os.path.exists(validated):
            raise PathNotFoundError(requested, validated)

        return validated

    def _validate_missing(self, requested: str, absolute: str) -> str:
        """Validate a not-yet-existing path through its nearest existing ancestor."""
        remainder: list[str] = [os.path.basename(absolute)]
        current = os.path.dirname(absolute)
        # lexists stops at a dangling symlink so its target gets checked
        while not os.path.lexists(current):
            parent = os.path.dirname(current)
            if parent == current:
                raise SandboxViolationError(
                    requested,
                    f"Access denied - no existing ancestor of {absolute} resolves inside the sandbox",
                )
            remainder.append(os.path.basename(current))
            current = parent

        real_ancestor = os.path.realpath(current)
        if not self._allowed.contains(real_ancestor):
            raise SandboxViolationError(
                requested,
                f"Access denied - ancestor directory resolves outside allowed directories: {current} -> {real_ancestor}",
                details={"resolved": real_ancestor},
            )
        validated = os.path.realpath(os.path.join(real_ancestor, *reversed(remainder)))
        if not self._allowed.contains(validated):
            raise SandboxViolationError(
                requested,
                f"Access denied - path resolves outside allowed directories: {absolute} -> {validated}",
                details={"resolved": validated},
            )
        return validated

    def is_allowed(self, requested: str, cwd: str | None = None) -> bool:
        """Non-raising containment check (existence not required)."""
        try:
            self.validate(requested, require_existence=False, cwd=cwd)
        except SandboxViolationError:
            return False
        return True

    def validate_command_paths(
        self,
        command: str,
        cwd: str,
        extra_allowed: Iterable[str] = (),
    ) -> None:
        """Check path-like arguments of a shell command stay in the sandbox.

        Heuristic: a token is treated as a path when it contains ``/``,
        is not an option, not a URL and not the value of ``-m``/``--message``.
        Device files and anything under `extra_allowed` are accepted.
        """
        try:
            tokens = shlex.split(command, comments=False, posix=True)
        except ValueError:
            tokens = command.split()

        allowed_prefixes = [os.path.normpath(p) for p in extra_allowed]
        previous = ""
        for token in tokens[1:]:
            prior, previous = previous, token
            if prior in ("-m", "--message"):
                continue
            if token.startswith("-") or "://" in token or "/" not in token:
                continue
            # Redirection operators glued to their target (2>/dev/null, >out/x)
            candidate = token.lstrip("0123456789&<>")
            if not candidate or "$" in candidate or "`" in candidate:
                continue
            if candidate in SAFE_DEVICE_PATHS:
                continue

            resolved = self.resolve(candidate, cwd)
            if any(_is_descendant(resolved, prefix) for prefix in allowed_prefixes):
                continue
            if not self.is_allowed(resolved):
                raise SandboxViolationError(
                    candidate,
                    f"Path '{candidate}' resolves outside the allowed directories ({resolved}). "
                    f"All paths must be within {', '.join(self._allowed.roots)}",
                    details={"resolved": resolved, "command": command},
                )


def temp_directories() -> tuple[str, ...]:
    """System temporary directories, deduplicated, in canonical form."""
    candidates = ["/tmp", "/var/tmp", tempfile.gettempdir()]
    tmpdir_env = os.environ.get("TMPDIR")
    if tmpdir_env:
        candidates.append(tmpdir_env)
    seen: list[str] = []
    for candidate in candidates:
        normalized = os.path.normpath(candidate)
        if normalized not in seen:
            seen.append(normalized)
    return tuple(seen)


def validate_path(
    requested: str,
    allowed_roots: Iterable[str],
    *,
    working_dir: str | None = None,
    require_existence: bool = True,
) -> str:
    """Functional form of PathSandbox.validate for one-off checks."""
    sandbox = PathSandbox(AllowedDirectorySet(allowed_roots, working_dir=working_dir))
    return sandbox.validate(requested, require_existence=require_existence)
