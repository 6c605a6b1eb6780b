"""Worktree path derivation and parsing.

Naming shapes:
- sibling:   {projectParent}/{projectName}-epic-{shortId}[-{slug}]
- subfolder: {projectPath}/.worktrees/epic-{shortId}[-{slug}]
- custom:    {basePath}/{projectName}-epic-{shortId}[-{slug}]

parse_path() is the inverse over the directory name.
"""

import logging
import os
import re

from epic_isolation.core.config import WorktreeSettings
from epic_isolation.core.models import (
    Epic,
    FailureKind,
    ParsedWorktreePath,
    Project,
    WorktreeFailure,
    WorktreeLocation,
    WorktreePathResponse,
    WorktreePathResult,
)
from epic_isolation.core.security import SecurityError, validate_path_component

logger = logging.getLogger(__name__)

# Keeps directory names well under filesystem path limits
DEFAULT_SLUG_MAX_LENGTH = 30
DEFAULT_SUBFOLDER = ".worktrees"
SHORT_ID_LENGTH = 8

_NON_SLUG_CHARS = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 50) -> str:
    """Convert text to a lower-case, hyphen-separated slug.

    The result matches [a-z0-9]+(-[a-z0-9]+)* or is empty, and never
    starts or ends with a hyphen, even after truncation.
    """
    slug = _NON_SLUG_CHARS.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


def short_id(uuid: str) -> str:
    """First 8 characters of a UUID."""
    return uuid[:SHORT_ID_LENGTH]


def generate_epic_branch_name(epic_id: str, epic_title: str) -> str:
    """Feature branch name for an epic's worktree."""
    slug = slugify(epic_title)
    if not slug:
        return f"feature/epic-{short_id(epic_id)}"
    return f"feature/epic-{short_id(epic_id)}-{slug}"


def _failure(error: str, kind: FailureKind = FailureKind.VALIDATION) -> WorktreeFailure:
    return WorktreeFailure(error=error, kind=kind)


def _epic_dir_name(prefix: str, epic_short_id: str, slug: str) -> str:
    name = f"{prefix}epic-{epic_short_id}"
    return f"{name}-{slug}" if slug else name


def derive_path(
    project_path: str,
    epic_id: str,
    epic_title: str,
    location: WorktreeLocation | str = WorktreeLocation.SIBLING,
    base_path: str | None = None,
    slug_max_length: int = DEFAULT_SLUG_MAX_LENGTH,
    subfolder_name: str = DEFAULT_SUBFOLDER,
) -> WorktreePathResponse:
    """Compute an unused worktree path for an epic.

    Returns a failure (never raises) for invalid input, an unknown
    location, an unsafe generated component, or an existing path. The
    last one carries FailureKind.COLLISION so callers can retry.
    """
    if not project_path or not isinstance(project_path, str):
        return _failure("Project path must be a non-empty string")

    if not epic_id or not isinstance(epic_id, str):
        return _failure("Epic ID must be a non-empty string")

    if not epic_title or not isinstance(epic_title, str):
        return _failure("Epic title must be a non-empty string")

    if not os.path.isabs(project_path):
        return _failure("Project path must be absolute")

    epic_slug = slugify(epic_title, max_length=slug_max_length)
    epic_short_id = short_id(epic_id)

    # slugify should already have sanitized these
    try:
        validate_path_component(epic_short_id)
        if epic_slug:
            validate_path_component(epic_slug)
    except SecurityError as e:
        logger.warning(f"Path component validation failed: {e}")
        return _failure(str(e), FailureKind.SECURITY)

    normalized_project = os.path.normpath(project_path)
    project_name = os.path.basename(normalized_project)

    try:
        location = WorktreeLocation(location)
    except ValueError:
        return _failure(f"Unknown location type: {location}")

    if location is WorktreeLocation.SIBLING:
        worktree_name = _epic_dir_name(f"{project_name}-", epic_short_id, epic_slug)
        worktree_path = os.path.join(os.path.dirname(normalized_project), worktree_name)
    elif location is WorktreeLocation.SUBFOLDER:
        worktree_name = _epic_dir_name("", epic_short_id, epic_slug)
        worktree_path = os.path.join(normalized_project, subfolder_name, worktree_name)
    else:
        if not base_path or not isinstance(base_path, str):
            return _failure("Custom location requires basePath parameter")
        if not os.path.isabs(base_path):
            return _failure("basePath must be an absolute path")
        worktree_name = _epic_dir_name(f"{project_name}-", epic_short_id, epic_slug)
        worktree_path = os.path.join(os.path.normpath(base_path), worktree_name)

    if os.path.lexists(worktree_path):
        logger.debug(f"Worktree path already exists: {worktree_path}")
        return _failure(
            f"Path already exists: {worktree_path}. Remove it first or use a different epic.",
            FailureKind.COLLISION,
        )

    logger.debug(f"Generated worktree path: {worktree_path} (location: {location.value})")
    return WorktreePathResult(path=worktree_path, worktree_name=worktree_name)


def suggest_alternative(
    project_path: str,
    epic_id: str,
    epic_title: str,
    location: WorktreeLocation | str = WorktreeLocation.SIBLING,
    base_path: str | None = None,
    slug_max_length: int = DEFAULT_SLUG_MAX_LENGTH,
    subfolder_name: str = DEFAULT_SUBFOLDER,
    max_attempts: int = 10,
) -> WorktreePathResponse:
    """Find an available path, appending "-2", "-3", ... on collision.

    Only collisions are retried; any other failure is returned as is.
    The result's `suffix` is 0 when the primary path was free.
    """

    def attempt(title: str) -> WorktreePathResponse:
        return derive_path(
            project_path,
            epic_id,
            title,
            location=location,
            base_path=base_path,
            slug_max_length=slug_max_length,
            subfolder_name=subfolder_name,
        )

    primary = attempt(epic_title)
    if primary.success or primary.kind is not FailureKind.COLLISION:
        return primary

    base_slug = slugify(epic_title, max_length=slug_max_length)
    for suffix in range(2, max_attempts + 2):
        # Truncation must not cut the suffix off
        tail = f"-{suffix}"
        head = base_slug[: max(slug_max_length - len(tail), 0)].rstrip("-")
        result = attempt(f"{head}{tail}")
        if result.success:
            return result.model_copy(update={"suffix": suffix})
        if result.kind is not FailureKind.COLLISION:
            return result

    return _failure(
        f"Could not find available path after {max_attempts} attempts",
        FailureKind.EXHAUSTED,
    )


# Ordered alternatives; the first full match wins. A project name can
# itself contain "-epic-", so the named shapes are greedy on the name.
_PATH_GRAMMAR: tuple[tuple[re.Pattern[str], tuple[str | None, str, str | None]], ...] = (
    (re.compile(r"^(.+)-epic-([a-f0-9]{8})-(.+)$"), ("project_name", "epic_short_id", "slug")),
    (re.compile(r"^(.+)-epic-([a-f0-9]{8})$"), ("project_name", "epic_short_id", None)),
    (re.compile(r"^epic-([a-f0-9]{8})-(.+)$"), (None, "epic_short_id", "slug")),
    (re.compile(r"^epic-([a-f0-9]{8})$"), (None, "epic_short_id", None)),
)


def parse_path(worktree_path: str) -> ParsedWorktreePath:
    """Recover project name, epic short id and slug from a worktree path."""
    dirname = os.path.basename(os.path.normpath(worktree_path)) if worktree_path else ""

    for pattern, fields in _PATH_GRAMMAR:
        match = pattern.match(dirname)
        if not match:
            continue
        groups = iter(match.groups())
        values = {field: next(groups) for field in fields if field is not None}
        return ParsedWorktreePath(matched=True, **values)

    return ParsedWorktreePath()


def derive_epic_path(
    project: Project,
    epic: Epic,
    settings: WorktreeSettings | None = None,
) -> WorktreePathResponse:
    """Available worktree path for an epic, using project then global settings.

    The project's own location policy wins; its custom base path falls
    back to `settings.custom_base_path`.
    """
    settings = settings or WorktreeSettings()
    location = project.worktree_location or settings.default_location
    return suggest_alternative(
        project.path,
        epic.id,
        epic.title,
        location=location,
        base_path=project.worktree_base_path or settings.custom_base_path,
        slug_max_length=settings.slug_max_length,
        subfolder_name=settings.subfolder_name,
    )
