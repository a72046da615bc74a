# ABOUTME: Tag-update engine: rewrites kustomization image tags with minimal diffs
# ABOUTME: Glob matching of image patterns, text surgery, commit message templates

"""
Kustomization tag updates without reformatting.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

A kustomization file pins image tags like this:

    images:
      - name: registry.example.com/web
        newTag: "1.4.1"      # bumped by CI
      - name: registry.example.com/worker
        newName: registry.example.com/worker-v2
        newTag: 1.4.1

Bumping the web image to 1.4.2 should produce a one-line diff. Loading the
YAML, changing the value and dumping it again would reorder keys, drop the
comment, change quoting and reindent lists. So the file is handled twice:

1. PARSED with PyYAML, only to learn which image names are declared.
   The parse result is never written back.

2. EDITED as plain text: a regular expression finds the `- name: <image>`
   block and the `newTag:` line inside it, and the tag value's character span
   is replaced. Every other byte stays where it was.

=============================================================================
IMAGE PATTERNS
=============================================================================

A deployment lists the image names it owns:

    images: ["registry.example.com/web", "registry.example.com/web-*"]

- Exact names are REQUIRED: the manifest must declare them, or the whole
  update fails and names every missing one.
- Names containing `*` are OPTIONAL globs: they update whatever they match,
  possibly nothing. `*` matches any run of characters, including `/`, and a
  pattern must match the whole name.

=============================================================================
OUTCOMES OF Deployment.apply
=============================================================================

- Commit id (str): the manifest changed, was written, staged and committed.
- None: every matched image already had the requested tag. Nothing written.
- ManifestError: missing or ambiguous images, unreadable manifest.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

import structlog
import yaml
from jinja2 import StrictUndefined, TemplateSyntaxError, meta
from jinja2.sandbox import SandboxedEnvironment

from image_updater.config import DEFAULT_COMMIT_MESSAGE

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from jinja2 import Template

    from image_updater.config import DeploymentConfig
    from image_updater.repository import Worktree

logger = structlog.get_logger(__name__)

TEMPLATE_VARIABLES = frozenset({"name", "tag", "user"})


# =============================================================================
# ERRORS
# =============================================================================


class ManifestError(Exception):
    """The manifest cannot be updated as requested."""


class ImageNotFoundError(ManifestError):
    """One or more images could not be found in the manifest."""

    def __init__(self, images: Sequence[str]) -> None:
        self.images = list(images)
        super().__init__(f"kustomization file does not contain image(s): {', '.join(self.images)}")


class DuplicateImageError(ManifestError):
    """An image is declared by more than one block, so the target is ambiguous."""

    def __init__(self, image: str) -> None:
        self.image = image
        super().__init__(f"found more than one image definition for {image}")


class TemplateError(ValueError):
    """A commit message template does not compile."""


# =============================================================================
# PATTERN MATCHING
# =============================================================================


def fnmatch(pattern: str, value: str) -> bool:
    """
    Match an image name against an exact name or a `*` glob.

    Only `*` is special. Everything else, including `?`, `[` and `.`, is
    literal. The match is anchored at both ends.

    Examples:
        >>> fnmatch("app-*", "app-foo")
        True
        >>> fnmatch("app", "app-foo")
        False
        >>> fnmatch("registry/*/web", "registry/team/web")
        True
    """
    if "*" not in pattern:
        return value == pattern
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.fullmatch(regex, value, flags=re.DOTALL) is not None


def match_image(patterns: Iterable[str], name: str) -> bool:
    """True if any pattern matches the image name."""
    return any(fnmatch(pattern, name) for pattern in patterns)


# =============================================================================
# MANIFEST PARSING (existence checks only)
# =============================================================================


class DeclaredImage(NamedTuple):
    """An entry of the manifest's `images:` list."""

    name: str
    tag: str | None


def declared_images(text: str) -> list[DeclaredImage]:
    """
    List the images a kustomization declares.

    Entries without a string `name` are skipped. A missing or empty
    `images:` key gives an empty list.

    Raises:
        ManifestError: If the text is not YAML or not a mapping.
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestError(f"failed to decode kustomization file: {e}") from e

    if document is None:
        return []
    if not isinstance(document, dict):
        raise ManifestError("failed to decode kustomization file: top level is not a mapping")

    images = document.get("images") or []
    if not isinstance(images, list):
        raise ManifestError("failed to decode kustomization file: images is not a list")

    declared = []
    for entry in images:
        if not isinstance(entry, dict) or not isinstance(entry.get("name"), str):
            continue
        tag = entry.get("newTag")
        declared.append(DeclaredImage(entry["name"], None if tag is None else str(tag)))
    return declared


# =============================================================================
# TEXT SURGERY
# =============================================================================

# A line inside a list item after its first line: indented, and not the
# start of the next item. Blank lines are allowed.
_BLOCK_LINE = r"(?:[ \t]+[^ \t\r\n-][^\n]*|[ \t\r]*)"

# Optional trailing comment, then the end of the line
_LINE_END = r"[ \t]*(?:#[^\r\n]*)?\r?$"

_IMAGE_BLOCK = (
    r"^[ \t]*-[ \t]+name:[ \t]+[\"']?{name}[\"']?" + _LINE_END
    + r"(?:\n" + _BLOCK_LINE + r")*?"
    + r"\n[ \t]+newTag:[ \t]+[\"']?(?P<tag>[^\"'\s#]+?)[\"']?" + _LINE_END
)


def _image_block_regex(image_name: str) -> re.Pattern[str]:
    return re.compile(
        _IMAGE_BLOCK.replace("{name}", re.escape(image_name)),
        flags=re.MULTILINE,
    )


def change_tag(text: str, image_name: str, new_tag: str) -> tuple[str, bool]:
    """
    Replace the `newTag` value of one image block.

    The block must begin with a `- name: <image_name>` line (the name may be
    quoted), and its `newTag:` line must follow within the same list item.
    Only the characters of the tag value are replaced; surrounding quotes,
    comments, indentation and line endings are kept.

    Args:
        text: Full manifest text.
        image_name: Exact image name to look for.
        new_tag: Replacement tag value.

    Returns:
        (new_text, changed). `changed` is False when the tag already had
        the requested value, in which case new_text is text.

    Raises:
        ImageNotFoundError: No block for the image has a newTag line.
        DuplicateImageError: More than one block matches.
    """
    matches = []
    for match in _image_block_regex(image_name).finditer(text):
        matches.append(match)
        # Only need to know whether there is more than one
        if len(matches) > 1:
            raise DuplicateImageError(image_name)
    if not matches:
        raise ImageNotFoundError([image_name])

    start, end = matches[0].span("tag")
    if text[start:end] == new_tag:
        return text, False
    return text[:start] + new_tag + text[end:], True


def update_manifest(text: str, patterns: Sequence[str], new_tag: str) -> str:
    """
    Apply a tag to every declared image matched by the patterns.

    Exact patterns that match no declared image make the whole update fail,
    naming every one of them. Glob patterns that match nothing are fine.
    An image declared by two blocks fails the whole update as well.

    Returns:
        The updated text; identical to `text` when nothing needed changing.
    """
    declared = declared_images(text)
    counts = Counter(image.name for image in declared)
    declared_names = set(counts)

    required = [p for p in patterns if "*" not in p]
    missing = [p for p in required if p not in declared_names]
    if missing:
        raise ImageNotFoundError(missing)

    # Blocks without a newTag line count too, so check before any edit
    for name, count in counts.items():
        if count > 1 and match_image(patterns, name):
            raise DuplicateImageError(name)

    updated = text
    for image in declared:
        if not match_image(patterns, image.name):
            continue
        updated, changed = change_tag(updated, image.name, new_tag)
        logger.debug("Image tag processed", image=image.name, changed=changed)
    return updated


# =============================================================================
# COMMIT MESSAGES
# =============================================================================

_template_env = SandboxedEnvironment(
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,  # noqa: S701 - commit messages are plain text
)


def compile_message_template(source: str) -> Template:
    """
    Compile a commit message template.

    Templates are Jinja2 and may use the variables `name` (deployment),
    `tag` (new tag) and `user` (authorizing identity):

        "[{{ name }}] Version bumped to {{ tag }} by {{ user }}"

    Raises:
        TemplateError: On a syntax error or an unknown variable.
    """
    try:
        parsed = _template_env.parse(source)
    except TemplateSyntaxError as e:
        raise TemplateError(f"failed to parse message template: {e}") from e

    unknown = meta.find_undeclared_variables(parsed) - TEMPLATE_VARIABLES
    if unknown:
        raise TemplateError(
            f"failed to parse message template: unknown variable(s) {', '.join(sorted(unknown))}"
        )
    return _template_env.from_string(source)


# =============================================================================
# DEPLOYMENT
# =============================================================================


@dataclass(frozen=True)
class Deployment:
    """
    A configured deployment, ready to apply tags.

    Built once at startup by from_config(); the commit message template is
    compiled there, so a broken template stops the server instead of failing
    the first webhook.
    """

    name: str
    repository: str
    path: str
    images: tuple[str, ...]
    message: Template
    application: str | None = None

    @classmethod
    def from_config(cls, config: DeploymentConfig) -> Deployment:
        return cls(
            name=config.name,
            repository=config.repository,
            path=config.path,
            images=tuple(config.images),
            message=compile_message_template(config.message or DEFAULT_COMMIT_MESSAGE),
            application=config.argocd_app,
        )

    def render_message(self, tag: str, user: str) -> str:
        return self.message.render(name=self.name, tag=tag, user=user)

    def apply(self, worktree: Worktree, tag: str, user: str) -> str | None:
        """
        Update the manifest in a worktree and commit the change.

        Args:
            worktree: Checked-out repository to edit.
            tag: New image tag.
            user: Authorizing identity for the commit message.

        Returns:
            The new commit id, or None when the manifest already carried the
            tag for every matched image.

        Raises:
            ManifestError: Missing, ambiguous or unparseable image entries.
            RepositoryError: Reading, writing, staging or committing failed.
        """
        original = worktree.read_text(self.path)
        updated = update_manifest(original, self.images, tag)
        if updated == original:
            return None

        worktree.write_text(self.path, updated)
        worktree.stage(self.path)
        return worktree.commit(self.render_message(tag, user))
