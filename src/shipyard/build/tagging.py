"""Deterministic image tags from branch name and revision."""

import re

from shipyard.core.exceptions import InvalidInputError

# Docker tag grammar: [A-Za-z0-9_][A-Za-z0-9_.-]{0,127}
MAX_TAG_LENGTH = 128
DEFAULT_REVISION_LENGTH = 8

_INVALID_TAG_CHARS = re.compile(r"[^a-z0-9_.-]")
_REVISION_RE = re.compile(r"^[A-Za-z0-9]+$")


def normalize_branch(branch: str) -> str:
    """Lowercase a branch name and turn it into a tag-safe string.

    Path separators become hyphens, as does anything else a container tag
    cannot hold. Leading dots and hyphens are dropped.
    """
    if branch is None or not branch.strip():
        raise InvalidInputError("Branch name is empty", code="empty_branch")

    name = branch.strip().lower()
    # refs/heads/feature/x -> feature/x
    if name.startswith("refs/heads/"):
        name = name[len("refs/heads/"):]
    name = name.replace("/", "-").replace("\\", "-")
    name = _INVALID_TAG_CHARS.sub("-", name)
    name = name.lstrip(".-")

    if not name:
        raise InvalidInputError(
            f"Branch name has no tag-safe characters: {branch!r}",
            code="invalid_branch",
        )
    return name


def short_revision(revision: str, length: int = DEFAULT_REVISION_LENGTH) -> str:
    """Return the first ``length`` characters of a revision identifier."""
    if revision is None or not revision.strip():
        raise InvalidInputError("Revision is empty", code="empty_revision")
    if length < 1:
        raise InvalidInputError(f"Revision length must be positive, got: {length}", code="invalid_revision")

    revision = revision.strip()
    if not _REVISION_RE.match(revision):
        raise InvalidInputError(
            f"Revision must be alphanumeric, got: {revision!r}",
            code="invalid_revision",
        )
    if len(revision) < length:
        raise InvalidInputError(
            f"Revision {revision!r} is shorter than the {length}-character prefix",
            code="revision_too_short",
        )
    return revision[:length].lower()


def generate_tag(branch: str, revision: str, length: int = DEFAULT_REVISION_LENGTH) -> str:
    """Build the ``{branch}-{short-revision}`` tag.

    >>> generate_tag("main", "a1b2c3d4")
    'main-a1b2c3d4'
    >>> generate_tag("feature/auth", "e5f6g7h8")
    'feature-auth-e5f6g7h8'
    """
    branch_part = normalize_branch(branch)
    revision_part = short_revision(revision, length)

    # keep the whole revision prefix when the branch is very long
    room = MAX_TAG_LENGTH - len(revision_part) - 1
    if len(branch_part) > room:
        branch_part = branch_part[:room].rstrip(".-") or branch_part[:room]

    return f"{branch_part}-{revision_part}"
