"""Shared constants for storyforge."""

# Process exit codes
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_ABORTED = 2
EXIT_LOCK_CONFLICT = 3

# Review verdict lines (case-sensitive, first line of the review reply)
REVIEW_PASS = "REVIEW: PASS"
REVIEW_FAIL = "REVIEW: FAIL"

# ReviewExhausted carries at most this much of the last review
REVIEW_ERROR_MAX_BYTES = 2048

# Tail of the implement reply kept in state for knowledge extraction
LAST_OUTPUT_MAX_CHARS = 20_000
