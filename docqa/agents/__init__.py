# =============================================================================
# Agents Package — Provider-Facing Workflows
# =============================================================================
#   - evaluator.py: Chunks the document per provider, fans calls out through
#     each provider's admission controller, hands answers to consensus
#   - arbitrator.py: Tie-breaking model call with tolerant JSON verdict
#     parsing
#   - prompts.py: Extraction and arbitration prompt templates
# =============================================================================
