"""Filesystem walker.

Lists candidate files with `git ls-files` when the root is inside a git work
tree (so .gitignore is honoured), otherwise with os.walk. Include/exclude
globs, the size cap and the extension map then decide what gets indexed.
"""

from __future__ import annotations

import functools
import hashlib
import logging
import os
import subprocess
from collections.abc import Iterator, Sequence
from pathlib import Path, PurePosixPath

import git

from code_search.schemas.config import DiscoveryConfig
from code_search.schemas.indexing import SourceFile
from code_search.services.languages import language_for_path

__all__ = [
    'walk_files',
]

logger = logging.getLogger(__name__)


def walk_files(root: Path, config: DiscoveryConfig) -> Sequence[SourceFile]:
    """Read every indexable file under ``root``.

    Paths in the result are relative to ``root`` with '/' separators, sorted.
    Oversized, undecodable and unknown-language files are skipped.

    Raises:
        ValueError: If root is not a directory.
    """
    root = root.resolve()
    if not root.is_dir():
        raise ValueError(f'Not a directory: {root}')

    if config.use_git and _find_git_root(str(root)) is not None:
        candidates = _git_files(root)
        source = 'git'
    else:
        candidates = list(_walk(root))
        source = 'walk'

    files: list[SourceFile] = []
    skipped = 0
    for rel in sorted(set(candidates)):
        if not _selected(rel, config):
            continue
        language = language_for_path(rel)
        if language is None:
            continue
        source_file = _read(root, rel, language, config.max_file_bytes)
        if source_file is None:
            skipped += 1
            continue
        files.append(source_file)

    logger.info(f'[SCAN] {len(files)} files under {root} via {source} ({skipped} skipped)')
    return files


def _selected(rel: str, config: DiscoveryConfig) -> bool:
    path = PurePosixPath(rel)
    if not any(path.full_match(pattern) for pattern in config.include_patterns):
        return False
    return not any(path.full_match(pattern) for pattern in config.exclude_patterns)


def _read(root: Path, rel: str, language: str, max_file_bytes: int) -> SourceFile | None:
    path = root / rel
    try:
        if not path.is_file():
            return None
        size = path.stat().st_size
        if size > max_file_bytes:
            logger.debug(f'[SCAN] Skipping {rel}: {size} bytes exceeds {max_file_bytes}')
            return None
        data = path.read_bytes()
    except OSError as e:
        logger.warning(f'[SCAN] Skipping {rel}: {type(e).__name__}: {e}')
        return None

    try:
        text = data.decode('utf-8')
    except UnicodeDecodeError:
        logger.debug(f'[SCAN] Skipping {rel}: not UTF-8')
        return None

    return SourceFile(
        path=rel,
        text=text,
        content_hash=hashlib.sha256(data).hexdigest(),
        language=language,
        size=len(data),
    )


def _walk(root: Path) -> Iterator[str]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d != '.git')
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        for filename in filenames:
            yield filename if rel_dir == '.' else f'{rel_dir}/{filename}'


def _git_files(root: Path) -> Sequence[str]:
    """Tracked and untracked-but-not-ignored files, relative to ``root``."""
    result = subprocess.run(
        ['git', 'ls-files', '--cached', '--others', '--exclude-standard'],
        capture_output=True,
        text=True,
        cwd=root,
        timeout=30,
    )
    if result.returncode != 0:
        raise RuntimeError(f'git ls-files failed: {result.stderr}')
    # git prints paths relative to cwd; ../ entries are outside the root
    return [line for line in result.stdout.splitlines() if line and not line.startswith('../')]


@functools.lru_cache(maxsize=128)
def _find_git_root(directory: str) -> str | None:
    """Find the git root directory containing this path. Cached."""
    try:
        repo = git.Repo(directory, search_parent_directories=True)
        return str(repo.working_dir)
    except (git.InvalidGitRepositoryError, git.NoSuchPathError):
        return None
