"""
Wildcard byte patterns ("48 8B ?? 10 00 00 00").

A parsed pattern is a (bytes, mask) pair: mask[i] is True where the byte is
fixed and False where it is a wildcard.
"""

import struct


class PatternError(ValueError):
    """Raised for a malformed token in a signature pattern."""


_SIGNED_FORMATS = {1: '<b', 2: '<h', 4: '<i'}


def parse_pattern(text):
    """Split a pattern string into fixed bytes and a mask.

    "??" and "?" are wildcards; every other token must be exactly two hex
    digits.  Wildcard positions hold 0 in the returned bytes.
    """
    values = bytearray()
    mask = []
    for token in text.split():
        if token in ('??', '?'):
            values.append(0)
            mask.append(False)
            continue
        if len(token) != 2:
            raise PatternError(f"Invalid byte in pattern: {token!r}")
        try:
            values.append(int(token, 16))
        except ValueError:
            raise PatternError(f"Invalid byte in pattern: {token!r}") from None
        mask.append(True)
    return bytes(values), mask


def format_pattern(values, mask):
    """Inverse of parse_pattern, with uppercase hex."""
    return ' '.join(f"{b:02X}" if m else '??' for b, m in zip(values, mask))


def bytes_to_pattern(raw, wildcard=()):
    """Render raw bytes as a pattern, wildcarding the given positions."""
    wild = set(wildcard)
    return ' '.join('??' if i in wild else f"{b:02X}" for i, b in enumerate(raw))


def matches_at(data, offset, values, mask):
    """Masked compare of the pattern against data at offset."""
    if offset < 0 or offset + len(values) > len(data):
        return False
    for i, fixed in enumerate(mask):
        if fixed and data[offset + i] != values[i]:
            return False
    return True


def find_all(data, pattern, start=0, end=None, limit=0):
    """Every position in [start, end) where the pattern matches.

    Uses bytes.find() on the first fixed byte to skip ahead at C speed and
    only verifies the full pattern at candidate positions.  Overlapping
    matches are all reported; nothing is deduplicated.  pattern may be a
    string or an already-parsed (bytes, mask) pair.
    """
    values, mask = parse_pattern(pattern) if isinstance(pattern, str) else pattern
    matches = []
    pat_len = len(values)
    if end is None or end > len(data):
        end = len(data)
    start = max(start, 0)

    first_fixed = next((i for i, m in enumerate(mask) if m), None)
    if first_fixed is None:
        return matches  # all wildcards = meaningless

    needle = values[first_fixed:first_fixed + 1]
    pos = start

    while pos <= end - pat_len:
        idx = data.find(needle, pos + first_fixed, end)
        if idx < 0:
            break

        candidate = idx - first_fixed
        if candidate + pat_len > end:
            break

        if matches_at(data, candidate, values, mask):
            matches.append(candidate)
            if 0 < limit <= len(matches):
                return matches

        pos = candidate + 1

    return matches


def wildcard_runs(mask):
    """Yield (start, length) of every contiguous wildcard run."""
    run_start = None
    for i, fixed in enumerate(mask):
        if not fixed and run_start is None:
            run_start = i
        elif fixed and run_start is not None:
            yield run_start, i - run_start
            run_start = None
    if run_start is not None:
        yield run_start, len(mask) - run_start


def first_wildcard_run(mask):
    """(start, length) of the first contiguous wildcard run, or (None, 0)."""
    return next(wildcard_runs(mask), (None, 0))


def extract_displacement(data, match_offset, pattern, width=None):
    """Read a wildcard run of a match as a signed little-endian int.

    By default the first run is read and its length gives the width; only
    1, 2 and 4 byte runs carry a value, anything else returns None.  With
    width given, the first run of exactly that many bytes is read instead.
    """
    _values, mask = parse_pattern(pattern) if isinstance(pattern, str) else pattern
    if width is None:
        run_start, run_len = first_wildcard_run(mask)
    else:
        run_start, run_len = next(((s, n) for s, n in wildcard_runs(mask) if n == width),
                                  (None, 0))
    fmt = _SIGNED_FORMATS.get(run_len)
    if run_start is None or fmt is None:
        return None
    pos = match_offset + run_start
    if pos < 0 or pos + run_len > len(data):
        return None
    return struct.unpack_from(fmt, data, pos)[0]


def fix_displacement(pattern, value, width=4):
    """Copy of pattern with its first width-byte wildcard run fixed to value.

    None when the pattern has no such run.
    """
    values, mask = parse_pattern(pattern) if isinstance(pattern, str) else pattern
    run_start = next((s for s, n in wildcard_runs(mask) if n == width), None)
    if run_start is None:
        return None
    values = bytearray(values)
    mask = list(mask)
    values[run_start:run_start + width] = (value & ((1 << 8 * width) - 1)).to_bytes(width, 'little')
    mask[run_start:run_start + width] = [True] * width
    return bytes(values), mask
