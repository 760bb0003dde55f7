"""Application constants."""

# Actor ID recorded for engine-initiated mutations (clustering, auto-open).
# Operators never hold this ID; it keeps audit entries attributable.
SYSTEM_ACTOR_ID = "system"

# Tag applied when a user-facing "delete" closes a case.
DELETION_TAG = "deletion"

# Tag applied to synthetic cases raised by the clustering rule.
CLUSTER_TAG = "cluster"

# Human-readable case number prefixes per kind
CASE_NUMBER_PREFIXES = {
    "dispute": "D",
    "support_ticket": "T",
    "claim": "C",
    "anti_cheat_flag": "F",
}
