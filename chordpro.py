"""ChordPro helpers: compression, chord extraction, key detection and transposition."""
from __future__ import annotations

import logging
import re
import zlib
from typing import Dict, List, Optional

LOGGER = logging.getLogger(__name__)

COMPRESSION_LEVEL = 9
MAX_SONG_COMPRESSED_BYTES = 50 * 1024
MAX_ARRANGEMENT_COMPRESSED_BYTES = 100 * 1024
MAX_TRANSPOSE = 11

SHARP_NOTES = ['C', 'C#', 'D', 'D#', 'E', 'F', 'F#', 'G', 'G#', 'A', 'A#', 'B']
FLAT_NOTES = ['C', 'Db', 'D', 'Eb', 'E', 'F', 'Gb', 'G', 'Ab', 'A', 'Bb', 'B']
NOTE_INDEX = {name: index for index, name in enumerate(SHARP_NOTES)}
NOTE_INDEX.update({name: index for index, name in enumerate(FLAT_NOTES)})
NOTE_INDEX.update({'Cb': 11, 'B#': 0, 'Fb': 4, 'E#': 5})

MAJOR_KEY_NAMES = ['C', 'Db', 'D', 'Eb', 'E', 'F', 'F#', 'G', 'Ab', 'A', 'Bb', 'B']
MINOR_KEY_NAMES = ['C', 'C#', 'D', 'Eb', 'E', 'F', 'F#', 'G', 'G#', 'A', 'Bb', 'B']
FLAT_MAJOR_KEYS = {'F', 'Bb', 'Eb', 'Ab', 'Db', 'Gb', 'Cb'}
FLAT_MINOR_KEYS = {'D', 'G', 'C', 'F', 'Bb', 'Eb'}

BASIC_CHORD_RE = re.compile(r'\[([A-G][#b]?[^/\]]*)\]')
BRACKET_RE = re.compile(r'\[([^\]\n]+)\]')
CHORD_RE = re.compile(r'^([A-G][#b]?)((?:maj|min|dim|aug|sus|add|m|M|[0-9#b+\-()])*)(?:/([A-G][#b]?))?$')
DIRECTIVE_RE = re.compile(r'\{\s*([A-Za-z_]+)\s*(?::\s*([^}]*?))?\s*\}')
KEY_DIRECTIVE_RE = re.compile(r'(\{\s*key\s*:\s*)([^}]*?)(\s*\})', re.IGNORECASE)
BASE64_RE = re.compile(r'^[A-Za-z0-9+/]{20,}={0,2}$')

DIRECTIVE_ALIASES = {'t': 'title', 'st': 'subtitle'}


def compress(text: str) -> bytes:
    return zlib.compress((text or '').encode('utf-8'), COMPRESSION_LEVEL)


def decompress(data: Optional[bytes]) -> str:
    if not data:
        return ''
    try:
        return zlib.decompress(bytes(data)).decode('utf-8')
    except (zlib.error, UnicodeDecodeError):
        LOGGER.warning('Failed to decompress chord data (%d bytes)', len(data))
        return ''


def extract_chords(text: Optional[str], limit: Optional[int] = None) -> List[str]:
    """Unique bracketed chords in order of first appearance."""

    if not isinstance(text, str):
        return []
    chords: List[str] = []
    for match in BASIC_CHORD_RE.finditer(text):
        chord = match.group(1)
        if chord in chords:
            continue
        chords.append(chord)
        if limit is not None and len(chords) >= limit:
            break
    return chords


def is_valid_chord_data(text: Optional[str]) -> bool:
    """Reject binary or encoded payloads posing as ChordPro text."""

    if not isinstance(text, str):
        return False
    if '\x00' in text:
        return False
    if BASE64_RE.match(text.strip()):
        return False
    if not text:
        return True
    non_printable = sum(1 for ch in text if not ch.isprintable() and ch not in '\n\r\t')
    return non_printable / len(text) <= 0.1


def parse_directives(text: Optional[str]) -> Dict[str, str]:
    directives: Dict[str, str] = {}
    if not isinstance(text, str):
        return directives
    for match in DIRECTIVE_RE.finditer(text):
        name = match.group(1).lower()
        name = DIRECTIVE_ALIASES.get(name, name)
        directives.setdefault(name, (match.group(2) or '').strip())
    return directives


def _split_chord(chord: str):
    match = CHORD_RE.match(chord.strip())
    if not match:
        return None
    root, quality, bass = match.groups()
    if root not in NOTE_INDEX or (bass and bass not in NOTE_INDEX):
        return None
    return root, quality or '', bass


def _is_minor(quality: str) -> bool:
    return quality.startswith('m') and not quality.startswith('maj')


def normalize_key(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    parts = _split_chord(value.strip())
    if not parts:
        return None
    root, quality, _ = parts
    if quality not in ('', 'm', 'min', 'maj'):
        return None
    return root + ('m' if _is_minor(quality) else '')


def detect_key(text: Optional[str]) -> Optional[str]:
    key = normalize_key(parse_directives(text).get('key'))
    if key:
        return key
    if not isinstance(text, str):
        return None
    for match in BRACKET_RE.finditer(text):
        parts = _split_chord(match.group(1))
        if parts:
            root, quality, _ = parts
            return root + ('m' if _is_minor(quality) else '')
    return None


def _check_steps(steps: int) -> int:
    if not isinstance(steps, int) or isinstance(steps, bool) or abs(steps) > MAX_TRANSPOSE:
        raise ValueError('Transpose steps must be between -%d and %d' % (MAX_TRANSPOSE, MAX_TRANSPOSE))
    return steps


def _shift(note: str, steps: int, prefer_flats: bool) -> str:
    index = (NOTE_INDEX[note] + steps) % 12
    return (FLAT_NOTES if prefer_flats else SHARP_NOTES)[index]


def transposed_key(key: Optional[str], steps: int) -> Optional[str]:
    _check_steps(steps)
    normalized = normalize_key(key)
    if not normalized:
        return None
    if steps == 0:
        return normalized
    minor = normalized.endswith('m')
    root = normalized[:-1] if minor else normalized
    index = (NOTE_INDEX[root] + steps) % 12
    if minor:
        return MINOR_KEY_NAMES[index] + 'm'
    return MAJOR_KEY_NAMES[index]


def _prefers_flats(key: Optional[str]) -> Optional[bool]:
    if not key:
        return None
    if key.endswith('m'):
        return key[:-1] in FLAT_MINOR_KEYS
    return key in FLAT_MAJOR_KEYS


def transpose_chord(chord: str, steps: int, prefer_flats: Optional[bool] = None) -> str:
    _check_steps(steps)
    parts = _split_chord(chord)
    if not parts:
        return chord
    root, quality, bass = parts
    if prefer_flats is None:
        prefer_flats = 'b' in root[1:]
    result = _shift(root, steps, prefer_flats) + quality
    if bass:
        result += '/' + _shift(bass, steps, prefer_flats)
    return result


def transpose(text: str, steps: int, key: Optional[str] = None) -> str:
    """Transpose every bracketed chord and the ``{key:}`` directive."""

    _check_steps(steps)
    if not text or steps == 0:
        return text or ''
    source_key = normalize_key(key) or detect_key(text)
    target_key = transposed_key(source_key, steps) if source_key else None
    prefer_flats = _prefers_flats(target_key)

    def _replace_chord(match):
        return '[%s]' % transpose_chord(match.group(1), steps, prefer_flats)

    result = BRACKET_RE.sub(_replace_chord, text)
    if target_key:
        result = KEY_DIRECTIVE_RE.sub(lambda m: m.group(1) + target_key + m.group(3), result)
    return result
