"""
Toolgate Command Safety Classifier

Static analysis of shell command strings before they reach a
subprocess. No part of classification executes anything.

Detectors run in order and the first block verdict wins:
1. Inline-script scanner: ``bash -c``, ``python -c``, ``node -e`` ...
   payloads are classified recursively
2. Heredoc / here-string scanner: ``<<EOF ... EOF`` and ``<<<'...'``
   bodies are classified recursively
3. Version-control matcher: history-rewriting or data-discarding git
   operations, each with a remediation tip
4. Recursive-delete matcher: forced recursive ``rm`` is only allowed
   when every target is confined to a temporary directory

This is a heuristic guard, not a shell parser. It over-blocks commands
that merely mention a destructive pattern and under-blocks obfuscated
ones; both behaviours are pinned in tests.
"""

from __future__ import annotations

import posixpath
import re
import shlex
from collections.abc import Callable

from toolgate.core.models import SafetyVerdict
from toolgate.safety.paths import temp_directories

Detector = Callable[[str, int], "SafetyVerdict | None"]

MAX_NESTING_DEPTH = 4

# Characters that end the argument list of a simple command
_SEGMENT_END = r"[^;&|\n)`'\"]*"


# ─── Shell Words ────────────────────────────────────────────

_SHELL_PUNCTUATION = "();<>|&\n"


def _lex(command: str) -> list[str]:
    lexer = shlex.shlex(command, posix=True, punctuation_chars=_SHELL_PUNCTUATION)
    lexer.whitespace = " \t\r"
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def command_segments(command: str) -> list[list[str]]:
    """Split a command line into simple commands of unquoted words.

    Control operators (``;``, ``&&``, ``|``, newlines, parentheses) end a
    segment. Redirection operators are dropped together with their
    target. Unbalanced quoting falls back to treating quote and escape
    characters as word separators.
    """
    try:
        tokens = _lex(command)
    except ValueError:
        tokens = _lex(re.sub(r"[\"'\\]", " ", command))

    segments: list[list[str]] = [[]]
    skip_target = False
    for token in tokens:
        if skip_target:
            skip_target = False
            continue
        if token and all(c in _SHELL_PUNCTUATION for c in token):
            if "<" in token or ">" in token:
                current = segments[-1]
                # File descriptor prefix such as 2>/dev/null
                if current and current[-1].isdigit():
                    current.pop()
                skip_target = True
            elif segments[-1]:
                segments.append([])
            continue
        segments[-1].append(token)
    return [s for s in segments if s]


def normalize_command(command: str) -> str:
    """Command line rebuilt from unquoted words, segments joined by ``;``."""
    return " ; ".join(" ".join(words) for words in command_segments(command))


# ─── Version Control ────────────────────────────────────────

# (pattern, reason, tip); patterns are searched anywhere in the string
_GIT_RULES: list[tuple[re.Pattern[str], str, str]] = [
    (
        re.compile(r"\bgit\s+reset\b" + _SEGMENT_END + r"\s--(?:hard|merge)\b", re.IGNORECASE),
        "git reset --hard or --merge destroys uncommitted changes",
        "Consider using 'git stash' first to save your changes, or use 'git reset --soft' to preserve changes.",
    ),
    (
        re.compile(r"\bgit\s+checkout\b" + _SEGMENT_END + r"\s--\s+\S+", re.IGNORECASE),
        "git checkout -- <file> discards uncommitted file changes",
        "Use 'git restore --staged <file>' to unstage changes, or 'git stash' to save changes temporarily.",
    ),
    (
        re.compile(r"\bgit\s+checkout\b" + _SEGMENT_END + r"\s(?:-f|--force)(?=\s|$)", re.IGNORECASE),
        "git checkout --force throws away local modifications",
        "Commit or 'git stash' your changes before switching, or drop the --force flag.",
    ),
    (
        re.compile(r"\bgit\s+push\b" + _SEGMENT_END + r"\s(?:--force(?![-\w=])|-f)(?=\s|$)", re.IGNORECASE),
        "git push --force overwrites remote commit history",
        "Use 'git push --force-with-lease' for safer force pushes, or prefer creating a new branch instead.",
    ),
    (
        re.compile(r"\bgit\s+stash\s+(?:drop|clear)\b", re.IGNORECASE),
        "git stash drop/clear permanently deletes stashed changes",
        "Use 'git stash list' to see stashes, or 'git stash pop' to apply and remove a stash.",
    ),
]

# Case-sensitive: -d is the safe, merge-checked delete
_GIT_BRANCH_FORCE_DELETE = re.compile(
    r"\bgit\s+branch\b" + _SEGMENT_END + r"(?:\s-[a-zA-Z]*D[a-zA-Z]*(?=\s|$)|\s--delete\s+--force\b|\s--force\s+--delete\b)"
)
_GIT_RESTORE = re.compile(r"\bgit\s+restore\b(?P<rest>" + _SEGMENT_END + ")", re.IGNORECASE)
_GIT_CLEAN_FORCE = re.compile(r"\bgit\s+clean\b" + _SEGMENT_END + r"\s(?:-[a-zA-Z]*f[a-zA-Z]*|--force)(?=\s|$)")
_GIT_CLEAN_DRY_RUN = re.compile(r"\bgit\s+clean\b" + _SEGMENT_END + r"\s(?:-[a-zA-Z]*n[a-zA-Z]*|--dry-run)(?=\s|$)")


def _match_git_rules(text: str, subject: str) -> SafetyVerdict | None:
    for pattern, reason, tip in _GIT_RULES:
        if pattern.search(text):
            return SafetyVerdict.block(subject, reason, tip, detector="git")

    if _GIT_CLEAN_FORCE.search(text) and not _GIT_CLEAN_DRY_RUN.search(text):
        return SafetyVerdict.block(
            subject,
            "git clean -f permanently deletes untracked files",
            "Use 'git clean -n' to preview what would be deleted before removing anything.",
            detector="git",
        )

    if _GIT_BRANCH_FORCE_DELETE.search(text):
        return SafetyVerdict.block(
            subject,
            "git branch -D force-deletes branches without checking if they're merged",
            "Use 'git branch -d' (lowercase) to safely delete branches that are merged.",
            detector="git",
        )

    for match in _GIT_RESTORE.finditer(text):
        words = match.group("rest").split()
        if "--staged" in words or "-S" in words:
            continue
        if any(not w.startswith("-") for w in words):
            return SafetyVerdict.block(
                subject,
                "git restore <file> (without --staged) discards uncommitted changes",
                "Use 'git restore --staged <file>' to only unstage, or 'git stash' to save changes.",
                detector="git",
            )
    return None


def detect_destructive_git(command: str, depth: int = 0) -> SafetyVerdict | None:
    """Match the raw text first, then the same words with quoting removed."""
    verdict = _match_git_rules(command, command)
    if verdict is None:
        normalized = normalize_command(command)
        if normalized != command:
            verdict = _match_git_rules(normalized, command)
    return verdict


# ─── Recursive Delete ───────────────────────────────────────

_TMPDIR_VARS = ("$TMPDIR", "${TMPDIR}")


def _is_forced_recursive(options: list[str]) -> bool:
    recursive = force = False
    for opt in options:
        if opt in ("--recursive",):
            recursive = True
        elif opt == "--force":
            force = True
        elif opt.startswith("-") and not opt.startswith("--"):
            letters = opt[1:]
            recursive = recursive or "r" in letters or "R" in letters
            force = force or "f" in letters
    return recursive and force


def is_temp_confined(target: str) -> bool:
    """True when an rm target stays inside a temporary directory."""
    for var in _TMPDIR_VARS:
        if target == var or target.startswith(var + "/"):
            rest = target[len(var):]
            return ".." not in rest.split("/")
    if not target.startswith("/"):
        return False
    normalized = posixpath.normpath(target)
    for tmp in temp_directories():
        if normalized == tmp or normalized.startswith(tmp.rstrip("/") + "/"):
            return True
    return False


def _is_rm(word: str) -> bool:
    # Covers /bin/rm, \rm (alias bypass) and `rm
    return posixpath.basename(word.lstrip("\\`")) == "rm"


def _rm_targets(args: list[str]) -> list[str]:
    """Targets of a forced recursive rm; empty when the flags are missing."""
    options: list[str] = []
    targets: list[str] = []
    end_of_options = False
    for arg in args:
        if not end_of_options and arg == "--":
            end_of_options = True
        elif not end_of_options and arg.startswith("-"):
            options.append(arg)
        else:
            targets.append(arg)
    return targets if _is_forced_recursive(options) else []


def find_unconfined_rm_target(command: str) -> str | None:
    """First forced recursive rm target outside the temp directories.

    Quoted words that contain whitespace are scanned as command lines of
    their own, so ``echo 'rm -rf /'`` is treated like ``rm -rf /``.
    """
    for words in command_segments(command):
        for i, word in enumerate(words):
            if _is_rm(word):
                escaping = [t for t in _rm_targets(words[i + 1:]) if not is_temp_confined(t)]
                if escaping:
                    return escaping[0]
            elif len(word) < len(command) and any(c.isspace() for c in word):
                nested = find_unconfined_rm_target(word)
                if nested is not None:
                    return nested
    return None


def detect_dangerous_rm(command: str, depth: int = 0) -> SafetyVerdict | None:
    target = find_unconfined_rm_target(command)
    if target is None:
        return None
    return SafetyVerdict.block(
        command,
        f"rm -rf outside of temporary directories can cause permanent data loss (target: {target})",
        "Only rm -rf is allowed for /tmp/*, /var/tmp/*, or $TMPDIR/* to clean temporary files.",
        detector="rm",
    )


# ─── Embedded Payloads ──────────────────────────────────────

# interpreter basename pattern -> (flag pattern, display name)
_INTERPRETERS: list[tuple[re.Pattern[str], re.Pattern[str], str]] = [
    (re.compile(r"^(?:ba|z|k|da)?sh$"), re.compile(r"^-[a-zA-Z]*c$"), "shell"),
    (re.compile(r"^python[\d.]*$"), re.compile(r"^-c$"), "Python"),
    (re.compile(r"^(?:node|deno|bun)$"), re.compile(r"^(?:-e|--eval|-p|--print)$"), "JavaScript"),
    (re.compile(r"^npx$"), re.compile(r"^-c$"), "npx"),
    (re.compile(r"^ruby$"), re.compile(r"^-e$"), "Ruby"),
    (re.compile(r"^perl$"), re.compile(r"^-[a-zA-Z]*[eE]$"), "Perl"),
]

_INLINE_FALLBACK = re.compile(
    r"\b(?P<interp>(?:ba|z|k|da)?sh|python[\d.]*|node|npx|ruby|perl)\s+(?P<flag>-[a-zA-Z]*[ceE]|--eval)\s+(?P<payload>.+)",
    re.DOTALL,
)


def extract_inline_scripts(command: str) -> list[tuple[str, str]]:
    """Return (language, payload) for each embedded interpreter invocation."""
    found: list[tuple[str, str]] = []
    try:
        tokens = shlex.split(command, posix=True)
    except ValueError:
        tokens = []

    for i, token in enumerate(tokens[:-2] if len(tokens) > 2 else tokens[:0]):
        name = posixpath.basename(token)
        for interp, flag, language in _INTERPRETERS:
            if interp.match(name) and flag.match(tokens[i + 1]):
                found.append((language, tokens[i + 2]))
                break

    if not tokens:
        # Unbalanced quoting: scan everything after the flag
        for match in _INLINE_FALLBACK.finditer(command):
            found.append((match.group("interp"), match.group("payload")))
    return found


_HEREDOC_START = re.compile(r"(?<!<)<<(?!<)(?P<dash>-?)\s*(?P<quote>['\"]?)(?P<delim>\w+)(?P=quote)")
_HERESTRING = re.compile(r"<<<\s*(?:(?P<q>['\"])(?P<quoted>.*?)(?P=q)|(?P<bare>\S+))", re.DOTALL)


def extract_heredocs(command: str) -> list[tuple[str, str]]:
    """Return (kind, body) for every heredoc and here-string.

    A heredoc body runs from the line after its opener to the first line
    consisting solely of the delimiter; an unterminated body runs to the
    end of the string.
    """
    bodies: list[tuple[str, str]] = []
    for match in _HEREDOC_START.finditer(command):
        delim = match.group("delim")
        newline = command.find("\n", match.end())
        if newline == -1:
            continue
        lines = command[newline + 1:].split("\n")
        body_lines: list[str] = []
        for line in lines:
            check = line.lstrip("\t") if match.group("dash") else line
            if check.strip() == delim:
                break
            body_lines.append(line)
        bodies.append(("Heredoc", "\n".join(body_lines)))

    for match in _HERESTRING.finditer(command):
        body = match.group("quoted") if match.group("q") else match.group("bare")
        bodies.append(("Here-string", body or ""))
    return bodies


# ─── Classifier ─────────────────────────────────────────────

class CommandSafetyClassifier:
    """Pipeline of independent detectors; first block verdict wins.

    Stateless and safe to share across concurrent tool calls.
    """

    def __init__(self) -> None:
        self._detectors: list[tuple[str, Detector]] = [
            ("inline-script", self._detect_inline_scripts),
            ("heredoc", self._detect_heredocs),
            ("git", detect_destructive_git),
            ("rm", detect_dangerous_rm),
        ]

    def classify(self, command: str) -> SafetyVerdict:
        """Classify a shell command string. Pure; nothing is executed."""
        trimmed = command.strip()
        verdict = self._classify(trimmed, depth=0)
        return verdict or SafetyVerdict.allow(trimmed)

    def _classify(self, command: str, depth: int) -> SafetyVerdict | None:
        if depth > MAX_NESTING_DEPTH:
            return SafetyVerdict.block(
                command,
                "Command nests interpreters too deeply to analyse",
                "Write the script to a file in the workspace and run that file instead.",
                detector="nesting",
            )
        for _name, detector in self._detectors:
            verdict = detector(command, depth)
            if verdict is not None:
                return verdict
        return None

    def _detect_inline_scripts(self, command: str, depth: int) -> SafetyVerdict | None:
        for language, payload in extract_inline_scripts(command):
            inner = self._classify(payload.strip(), depth + 1)
            if inner is not None:
                return SafetyVerdict.block(
                    command,
                    f"Inline {language} script contains destructive operation: {inner.reason}",
                    inner.tip or "Review the script content for destructive commands.",
                    detector="inline-script",
                )
        return None

    def _detect_heredocs(self, command: str, depth: int) -> SafetyVerdict | None:
        for kind, body in extract_heredocs(command):
            inner = self._classify(body, depth + 1)
            if inner is not None:
                return SafetyVerdict.block(
                    command,
                    f"{kind} contains destructive operation: {inner.reason}",
                    inner.tip or f"Review the {kind.lower()} content for destructive commands.",
                    detector="heredoc",
                )
        return None


def classify_command(command: str) -> SafetyVerdict:
    """Module-level convenience wrapper around a shared classifier."""
    return _DEFAULT_CLASSIFIER.classify(command)


_DEFAULT_CLASSIFIER = CommandSafetyClassifier()


# ─── Mutation Heuristic ─────────────────────────────────────

MUTATING_BINARIES = frozenset({
    "rm", "rmdir", "mv", "cp", "mkdir", "touch", "chmod", "chown", "chgrp",
    "ln", "truncate", "dd", "shred", "unlink", "install", "patch", "tee",
})
MUTATING_GIT_SUBCOMMANDS = frozenset({
    "add", "am", "apply", "branch", "checkout", "cherry-pick", "clean", "commit",
    "fetch", "init", "merge", "mv", "pull", "push", "rebase", "reset", "restore",
    "revert", "rm", "stash", "switch", "tag",
})
MUTATING_PACKAGE_SUBCOMMANDS = frozenset({
    "install", "i", "add", "remove", "rm", "uninstall", "un", "update", "upgrade",
    "publish", "link", "unlink", "ci",
})
PACKAGE_MANAGERS = frozenset({"npm", "pnpm", "yarn", "bun", "pip", "pip3", "uv", "poetry", "cargo", "gem", "brew", "apt", "apt-get"})
MUTATING_WORDS = re.compile(r"\b(?:create|update|upgrade|install)\b", re.IGNORECASE)
_SEGMENT_SPLIT = re.compile(r"&&|\|\||;|\||\n")


def is_mutating_command(command: str) -> bool:
    """Heuristic: could this command change files or repository state?

    Any ``>`` counts as a redirection, even inside quotes. Over-flagging
    only adds a warning marker, so it is acceptable.
    """
    if ">" in command or MUTATING_WORDS.search(command):
        return True

    for segment in _SEGMENT_SPLIT.split(command):
        words = segment.strip().split()
        if not words:
            continue
        if words[0] == "sudo" and len(words) > 1:
            words = words[1:]
        binary = posixpath.basename(words[0])
        args = words[1:]

        if binary in MUTATING_BINARIES:
            return True
        if binary == "sed" and any(a == "-i" or a.startswith("-i") or a == "--in-place" for a in args):
            return True
        if binary == "git":
            sub = next((a for a in args if not a.startswith("-")), "")
            if sub in MUTATING_GIT_SUBCOMMANDS:
                return True
        if binary in PACKAGE_MANAGERS:
            sub = next((a for a in args if not a.startswith("-")), "")
            if sub in MUTATING_PACKAGE_SUBCOMMANDS:
                return True
    return False
