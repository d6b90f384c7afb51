"""taleforge — tiered lorebook retrieval and a resumable LLM turn pipeline for interactive fiction."""
