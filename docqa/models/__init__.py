# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Validated structures for untrusted model output (arbitration verdicts) and
# for controller statistics snapshots.
# =============================================================================
