"""
Tunables shared by the scanner, drift detector and verifier.

The CLI overrides the per-run values (minimum confidence, context size);
everything else is fixed policy.
"""

# region Displacement Index

# Displacements outside [0, MAX_DISPLACEMENT) are noise, not struct offsets.
MAX_DISPLACEMENT = 0x100000

# How many bytes of a recognized instruction are kept with each entry:
# REX.W + opcode + ModR/M + disp32.
INSTRUCTION_LENGTH = 7

# Number of busiest offsets reported by index stats.
INDEX_STATS_TOP = 20

# endregion Displacement Index


# region Extraction

# A field referenced by more than this many instructions is too ambiguous
# to anchor a signature on.
MAX_FIELD_OCCURRENCES = 10

DEFAULT_MIN_CONFIDENCE = 70

# Fixed bytes kept on each side of the instruction for disambiguation.
DEFAULT_CONTEXT_BYTES = 8

# Minimum printable run considered a string by find_strings().
MIN_STRING_LENGTH = 4

RTTI_FIELD = "_rtti"

# endregion Extraction


# region Scanning

# A bare (context-free) pattern seen more often than this is reported as
# ambiguous instead of guessing which occurrence is the field.
AMBIGUOUS_MATCH_LIMIT = 10

# Ceiling for a match that only the bare pattern found after the stored
# context stopped matching. Stays below PATCH_CONFIDENCE_THRESHOLD.
CONTEXT_LOST_CONFIDENCE = 50

# endregion Scanning


# region Signature Status

# Signature confidence bands reported by the status summary.
HIGH_CONFIDENCE = 90
LOW_CONFIDENCE = 70

# Structs whose average signature confidence falls below this are listed.
WEAK_STRUCT_AVERAGE = 80

# endregion Signature Status


# region Verification

# |delta| above this is a structural shift (error), below it is a warning.
SEVERITY_DELTA_THRESHOLD = 0x100

# Mismatches at or above this signature confidence become patch suggestions.
PATCH_CONFIDENCE_THRESHOLD = 70

# endregion Verification


# region Drift Suggestions

HIERARCHY_SUGGESTION_THRESHOLD = 0.5
CASCADE_SUGGESTION_THRESHOLD = 0.6
CROSS_HIERARCHY_SUGGESTION_THRESHOLD = 0.7

# endregion Drift Suggestions
