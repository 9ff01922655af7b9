"""Source-control deltas and refresh hooks."""

from __future__ import annotations

import logging
import shutil
import stat
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

HOOK_NAMES = ("post-commit", "post-merge")
HOOK_MARKER = "# vectorize: refresh index"
HOOK_SNIPPET = f"""{HOOK_MARKER}
if command -v vectorize >/dev/null 2>&1; then
  (vectorize refresh >/dev/null 2>&1 &)
fi
"""


def _git(root: Path, *args: str) -> str | None:
    """Run git in ``root``; ``None`` when git is missing or the command fails."""
    if shutil.which("git") is None:
        return None
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            check=True,
            timeout=30,
        )
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
        logger.debug("git %s failed in %s: %s", " ".join(args), root, exc)
        return None
    return result.stdout


def current_head(root: Path) -> str | None:
    out = _git(root, "rev-parse", "HEAD")
    return out.strip() if out else None


def changed_files_since(root: Path, revision: str) -> list[str] | None:
    """Files changed (committed, staged, unstaged or untracked) since ``revision``.

    Returns ``None`` when the delta cannot be computed, e.g. the revision is gone.
    """
    diff = _git(root, "diff", "--name-only", "--relative", revision)
    if diff is None:
        return None
    untracked = _git(root, "ls-files", "--others", "--exclude-standard") or ""
    changed = {line.strip() for line in (diff + "\n" + untracked).splitlines() if line.strip()}
    return sorted(changed)


def install_git_hook(root: Path) -> list[Path]:
    """Add a background ``vectorize refresh`` to the post-commit and post-merge hooks.

    Existing hooks are appended to, never replaced. Returns the hooks written.
    """
    hooks_dir_out = _git(root, "rev-parse", "--git-path", "hooks")
    if hooks_dir_out is None:
        return []
    hooks_dir = root / hooks_dir_out.strip()
    hooks_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for name in HOOK_NAMES:
        hook = hooks_dir / name
        existing = hook.read_text(encoding="utf-8") if hook.exists() else ""
        if HOOK_MARKER in existing:
            continue
        if not existing:
            existing = "#!/bin/sh\n"
        elif not existing.endswith("\n"):
            existing += "\n"
        hook.write_text(existing + HOOK_SNIPPET, encoding="utf-8")
        hook.chmod(hook.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        written.append(hook)
        logger.info("Installed %s hook", name)
    return written


def ensure_gitignored(root: Path, entry: str) -> bool:
    """Append ``entry`` to ``.gitignore`` unless already present. Returns True if added."""
    gitignore = root / ".gitignore"
    lines = gitignore.read_text(encoding="utf-8").splitlines() if gitignore.exists() else []
    if entry in lines or entry.rstrip("/") in lines:
        return False
    content = "\n".join(lines + [entry]) + "\n"
    gitignore.write_text(content, encoding="utf-8")
    return True
