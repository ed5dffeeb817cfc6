"""Version pin removal for upgrade-mode imports.

Rewrites only the `dependencies:` section of a manifest, line by line, so
indentation, comments and every other section survive untouched:

    - numpy=1.21.0=py39h1a2b3c_0   ->   - numpy
    - scipy>=1.7                   ->   - scipy
    - pip:
        - requests[socks]==2.28.1  ->       - requests[socks]
"""

import logging
import re
from pathlib import Path

import yaml

from manifest import Manifest

logger = logging.getLogger(__name__)

_SECTION = re.compile(r'^(?P<key>[^\s#-][^:]*):')
_ITEM = re.compile(r'^(?P<indent>\s*)-(?P<gap>\s+)(?P<body>.*?)(?P<comment>\s+#.*)?$')
_CONDA_SPEC = re.compile(r'^(?P<name>(?:[\w.\-]+::)?[\w.\-]+)\s*(?:[=<>!~]|\s).*$')
_PIP_SPEC = re.compile(r'^(?P<name>[A-Za-z0-9_.\-]+(?:\[[^\]]*\])?)\s*(?:===|==|>=|<=|~=|!=|<|>).*$')


class TransformError(Exception):
    """The unpinned manifest could not be produced."""


def _unpin_body(body: str, pattern: re.Pattern) -> str:
    quote = ''
    if len(body) >= 2 and body[0] == body[-1] and body[0] in '\'"':
        quote, body = body[0], body[1:-1]
    match = pattern.match(body)
    if match:
        body = match.group('name')
    return f'{quote}{body}{quote}'


def unpin_text(content: str) -> str:
    """Remove version constraints from dependency entries of manifest text."""
    out: list[str] = []
    in_dependencies = False
    pip_indent = None  # indentation of the '- pip:' item while inside it

    for line in content.splitlines(keepends=True):
        text = line.rstrip('\r\n')
        ending = line[len(text):]

        section = _SECTION.match(text)
        if section:
            in_dependencies = section.group('key').strip() == 'dependencies'
            pip_indent = None
            out.append(line)
            continue

        item = _ITEM.match(text) if in_dependencies else None
        if not item:
            out.append(line)
            continue

        indent = len(item.group('indent'))
        body = item.group('body')
        if pip_indent is not None and indent <= pip_indent:
            pip_indent = None
        if body.rstrip().endswith(':'):
            if body.rstrip()[:-1].strip().strip('\'"') == 'pip':
                pip_indent = indent
            out.append(line)
            continue

        pattern = _PIP_SPEC if pip_indent is not None else _CONDA_SPEC
        new_body = _unpin_body(body, pattern)
        if new_body == body:
            out.append(line)
            continue
        out.append(f"{item.group('indent')}-{item.group('gap')}{new_body}"
                   f"{item.group('comment') or ''}{ending}")

    return ''.join(out)


def _validate(text: str) -> None:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise TransformError(f"unpinned manifest is not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise TransformError("unpinned manifest is not a mapping")


def strip_pins(manifest: Manifest, scratch_dir: Path) -> Manifest:
    """Write an unpinned copy of the manifest into scratch_dir.

    The original file is never modified. On any failure the original
    manifest is returned unchanged.
    """
    try:
        text = unpin_text(manifest.content)
        _validate(text)
        target = Path(scratch_dir) / f'{manifest.name}.yml'
        target.write_text(text, encoding='utf-8')
    except Exception as e:
        logger.warning(f"[{manifest.name}] Could not strip version pins, using original manifest: {e}")
        return manifest

    logger.debug(f"[{manifest.name}] Unpinned manifest written to {target}")
    return Manifest.from_text(manifest.name, text, target)
