"""Handlebars prompt rendering for pipeline stages.

Each template id maps to a pair of Handlebars sources (system, user).
PromptRenderer.render(template_id, variables) returns a RenderedPrompt.
Callers may override any built-in template id when constructing the
renderer. Rendering is pure: same template and variables, same output.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any, NamedTuple

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


class RenderedPrompt(NamedTuple):
    system: str
    user: str


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    n = int(count)
    if n <= 0:
        return result
    for item in list(items or [])[-n:]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_template(template_str: str, context: Mapping[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(dict(context), helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Built-in templates ───────────────────────────────────

_NARRATIVE_SYSTEM = """\
You are the narrator of an interactive story{{#if genre}} in the {{genre}} genre{{/if}}.
{{#if tone}}Tone: {{tone}}.
{{/if}}Write in {{pov}} person, {{tense}} tense.{{#if protagonist}} The protagonist is {{{protagonist}}}.{{/if}}
{{#if adventure}}The reader acts through their input; describe what happens, never decide the protagonist's next action.{{else}}Continue the prose from the author's direction.{{/if}}

{{#if context}}{{{context}}}
{{/if}}"""

_NARRATIVE_USER = """\
{{#if recent}}Story so far:
{{#last recent 10}}{{#if is_action}}> {{{content}}}{{else}}{{{content}}}{{/if}}

{{/last}}{{/if}}{{#if adventure}}> {{{input}}}{{else}}Direction: {{{input}}}{{/if}}"""

_CLASSIFIER_SYSTEM = """\
You track world state for an interactive story. Read the new narration and \
report only changes it establishes. Return a single JSON object with the keys \
new_characters, character_updates, new_locations, location_updates, new_items, \
item_updates, new_story_beats, story_beat_updates and scene. Use empty lists \
when nothing changed. Return only the JSON, no other text."""

_CLASSIFIER_USER = """\
{{#if characters}}Known characters:
{{#each characters}}- {{{name}}} ({{status}})
{{/each}}{{/if}}{{#if locations}}Known locations:
{{#each locations}}- {{{name}}}{{#if current}} [current]{{/if}}
{{/each}}{{/if}}{{#if items}}Known items:
{{#each items}}- {{{name}}} x{{quantity}} ({{{location}}})
{{/each}}{{/if}}{{#if beats}}Story threads:
{{#each beats}}- {{{title}}} [{{status}}]
{{/each}}{{/if}}
Player input: {{{input}}}

New narration:
{{{narration}}}"""

_TIER3_SYSTEM = """\
You select lorebook entries for a story turn. Given the current input and \
recent story, pick the candidate entries that would help the narrator write \
the next response. Return JSON: {"selected_ids": ["<id or index>", ...], \
"reasoning": "<short>"}. Return an empty list when none apply."""

_TIER3_USER = """\
{{#if recent}}Recent story:
{{#last recent 3}}{{{content}}}
{{/last}}
{{/if}}Current input: {{{input}}}

Candidates:
{{#each candidates}}[{{index}}] id={{id}} {{{name}}} ({{type}}): {{{summary}}}
{{/each}}"""

_TRANSLATION_SYSTEM = """\
Translate the user's text into {{language}}. Preserve paragraph breaks, names \
and formatting. Return only the translation."""

_TRANSLATION_USER = "{{{text}}}"

_SCENE_SYSTEM = """\
You pick visually striking moments from story narration for illustration. \
Return JSON: {"scenes": [{"prompt": "<image prompt>", "source_text": \
"<quoted sentence>", "characters": ["<name>"]}]}. At most {{max_scenes}} scenes.\
{{#if style}} Art style: {{style}}.{{/if}}"""

_SCENE_USER = """\
{{#if characters}}Characters present:
{{#each characters}}- {{{name}}}: {{{description}}}
{{/each}}{{/if}}
Narration:
{{{narration}}}"""

_SUGGESTIONS_SYSTEM = """\
You suggest where a story could go next for its author. Return JSON: \
{"suggestions": [{"text": "<direction>", "type": "action|dialogue|revelation|twist"}]} \
with three varied suggestions."""

_SUGGESTIONS_USER = """\
{{#if threads}}Open threads:
{{#each threads}}- {{{title}}}
{{/each}}{{/if}}{{#if recent}}Recent story:
{{#last recent 4}}{{{content}}}

{{/last}}{{/if}}Latest passage:
{{{narration}}}"""

_CHOICES_SYSTEM = """\
You offer the player next actions in a text adventure. Return JSON: \
{"choices": [{"text": "<action in the player's voice>", "type": "action|dialogue|examine|move"}]} \
with three to four distinct choices.{{#if protagonist}} The player character is {{{protagonist}}}.{{/if}}"""

_CHOICES_USER = """\
{{#if location}}Location: {{location}}
{{/if}}{{#if characters}}Present:
{{#each characters}}- {{{name}}}
{{/each}}{{/if}}{{#if inventory}}Carrying:
{{#each inventory}}- {{{name}}}
{{/each}}{{/if}}
Latest narration:
{{{narration}}}"""


BUILTIN_TEMPLATES: dict[str, tuple[str, str]] = {
    "narrative": (_NARRATIVE_SYSTEM, _NARRATIVE_USER),
    "classifier": (_CLASSIFIER_SYSTEM, _CLASSIFIER_USER),
    "tier3-entry-selection": (_TIER3_SYSTEM, _TIER3_USER),
    "translation": (_TRANSLATION_SYSTEM, _TRANSLATION_USER),
    "scene-identification": (_SCENE_SYSTEM, _SCENE_USER),
    "suggestions": (_SUGGESTIONS_SYSTEM, _SUGGESTIONS_USER),
    "action-choices": (_CHOICES_SYSTEM, _CHOICES_USER),
}


class PromptRenderer:
    """Renders built-in (or overridden) templates by id."""

    def __init__(self, overrides: Mapping[str, tuple[str, str]] | None = None) -> None:
        self._templates = dict(BUILTIN_TEMPLATES)
        if overrides:
            self._templates.update(overrides)

    def render(self, template_id: str, variables: Mapping[str, Any]) -> RenderedPrompt:
        pair = self._templates.get(template_id)
        if pair is None:
            raise PromptError(f"Unknown template id: {template_id!r}")
        system, user = pair
        return RenderedPrompt(
            system=render_template(system, variables).strip(),
            user=render_template(user, variables).strip(),
        )
