"""Provider-neutral generation core.

Canonical data model, backend adapters (Gemini REST, OpenAI-compatible),
retry policy, history compaction and the ChatSession orchestrator.
"""
