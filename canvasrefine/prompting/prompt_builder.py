"""Prompt assembly for image refinement and model-side helpers.

Backends generate from text alone and never see the previous image, so every
refinement is expressed as one self-contained instruction string. This module
builds that string and the fixed instruction texts used for the vision
description and prompt-enrichment chat calls.

Design constraints:
    - Deterministic construction: identical inputs give byte-identical output.
    - Fixed section order (see `compose_refinement_prompt`).
    - No I/O and no global state mutation.

Length budgeting:
    Image backends reject prompts above a hard character limit. The composer
    targets `prompt_limit - PROMPT_MARGIN` and shrinks sections in a fixed order
    until the text fits. The original prompt is never shortened.
"""

from dataclasses import dataclass

from canvasrefine.core.models import Annotation, RefinementRequest


class PromptBudgetError(ValueError):
    """Raised when the refinement cannot fit the budget even after truncation."""


PROMPT_MARGIN = 200
DESCRIPTION_CAP = 1500
DESCRIPTION_TRUNCATED_CAP = 800

DESCRIPTION_MARKER = "... [description truncated to fit the prompt limit]"
REFINEMENT_MARKER = "... [refinement truncated to fit the prompt limit]"


# =========================================================
# REFINEMENT PROMPT
# =========================================================
# Section order (each optional section is omitted when empty):
#   1) Header
#   2) Original prompt (quoted, never truncated)
#   3) Reference image analysis
#   4) Global changes
#   5) Region changes, one `<index>: <phrase> - <feedback>` line per region
#   6) Approach footer
# Truncation order when over budget:
#   a) reference analysis -> DESCRIPTION_TRUNCATED_CAP + DESCRIPTION_MARKER
#   b) global + region block -> cut at remaining space + REFINEMENT_MARKER
#   c) reference analysis dropped, then (b) again
#   d) PromptBudgetError

HEADER = "# IMAGE REFINEMENT\n\n"

APPROACH = (
    "## APPROACH\n"
    "1. Use reference analysis as base\n"
    "2. Apply specified changes\n"
    "3. Maintain composition and style consistency\n"
)


@dataclass(frozen=True)
class ComposedPrompt:
    """Composition result plus what had to be shortened."""

    text: str
    description_truncated: bool = False
    description_dropped: bool = False
    feedback_truncated: bool = False


def region_feedback_lines(regions: tuple[Annotation, ...] | list[Annotation]) -> list[str]:
    """Render region lines for annotations that carry feedback.

    Indices are the annotation's 1-based position in `regions`, so removing
    feedback from one mark does not renumber the others.
    """
    lines = []
    for index, annotation in enumerate(regions, start=1):
        feedback = (annotation.feedback_text or "").strip()
        if not feedback:
            continue
        if annotation.spatial_phrase is None:
            raise ValueError(f"Annotation {annotation.id} has not been described")
        lines.append(f"{index}: {annotation.spatial_phrase} - {feedback}")
    return lines


def _original_section(original_prompt: str) -> str:
    return f'## ORIGINAL: "{original_prompt}"\n\n'


def _description_section(description: str | None) -> str:
    if not description:
        return ""
    return f"## REFERENCE IMAGE ANALYSIS\n{description}\n\n"


def _feedback_block(global_feedback: str, lines: list[str]) -> str:
    block = ""
    if global_feedback.strip():
        block += f"## GLOBAL CHANGES\n{global_feedback}\n\n"
    if lines:
        block += "## REGION CHANGES\n" + "\n".join(lines) + "\n\n"
    return block


def _render(original_prompt: str, description: str | None, feedback_block: str) -> str:
    return (
        HEADER
        + _original_section(original_prompt)
        + _description_section(description)
        + feedback_block
        + APPROACH
    )


def _cap(text: str, limit: int, marker: str) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + marker


def _fit_feedback(
    original_prompt: str,
    description: str | None,
    feedback_block: str,
    budget: int,
) -> str | None:
    """Cut the feedback block so the rendered prompt fits, or return `None`."""
    base = len(_render(original_prompt, description, ""))
    available = budget - base - len(REFINEMENT_MARKER) - len("\n\n")
    if available <= 0:
        return None
    return feedback_block[:available].rstrip() + REFINEMENT_MARKER + "\n\n"


def compose_refinement(request: RefinementRequest) -> ComposedPrompt:
    """Compose a refinement instruction within the provider budget.

    Args:
        request: Original prompt, size, options, optional reference description,
            global feedback and finalized region annotations.

    Returns:
        `ComposedPrompt` with the final text and truncation flags.

    Raises:
        PromptBudgetError: When even the original prompt with the fixed
            sections exceeds the budget.
        ValueError: When a region with feedback has no spatial phrase.

    Determinism:
        Pure function of `request`.
    """
    budget = request.options.prompt_limit - PROMPT_MARGIN
    original_prompt = request.original_prompt
    global_feedback = request.global_feedback or ""
    lines = region_feedback_lines(request.regions)
    feedback_block = _feedback_block(global_feedback, lines)

    description = (request.reference_description or "").strip() or None
    if description:
        description = _cap(description, DESCRIPTION_CAP, "...")

    text = _render(original_prompt, description, feedback_block)
    if len(text) <= budget:
        return ComposedPrompt(text)

    description_truncated = False
    if description and len(description) > DESCRIPTION_TRUNCATED_CAP:
        description = _cap(description, DESCRIPTION_TRUNCATED_CAP, DESCRIPTION_MARKER)
        description_truncated = True
        text = _render(original_prompt, description, feedback_block)
        if len(text) <= budget:
            return ComposedPrompt(text, description_truncated=True)

    if feedback_block:
        fitted = _fit_feedback(original_prompt, description, feedback_block, budget)
        if fitted is not None:
            return ComposedPrompt(
                _render(original_prompt, description, fitted),
                description_truncated=description_truncated,
                feedback_truncated=True,
            )

    if description:
        text = _render(original_prompt, None, feedback_block)
        if len(text) <= budget:
            return ComposedPrompt(text, description_dropped=True)
        if feedback_block:
            fitted = _fit_feedback(original_prompt, None, feedback_block, budget)
            if fitted is not None:
                return ComposedPrompt(
                    _render(original_prompt, None, fitted),
                    description_dropped=True,
                    feedback_truncated=True,
                )

    raise PromptBudgetError(
        f"Refinement prompt cannot fit {budget} characters "
        f"(original prompt alone is {len(original_prompt)} characters)"
    )


def compose_refinement_prompt(request: RefinementRequest) -> str:
    """Return only the composed text of `compose_refinement`."""
    return compose_refinement(request).text


# =========================================================
# VISION DESCRIPTION PROMPT
# =========================================================
# Sent with the previous image attached. The description becomes the
# reference analysis section above, so it is asked to stay short.

VISION_ANALYSIS_INSTRUCTIONS = (
    "You are an expert image analyst. Create a CONCISE but detailed description "
    "of this image for use as a reference by an image generator.\n\n"
    "IMPORTANT: Your entire description MUST be under 1500 characters as it will "
    "be combined with other text under a strict length limit.\n\n"
    "Describe the following in the most space-efficient way possible:\n"
    "1. PRIMARY SUBJECTS: Main subjects with positions (using top-left, center, "
    "bottom-right, etc.)\n"
    "2. SPATIAL RELATIONSHIPS: Key spatial relationships between elements\n"
    "3. COMPOSITION: Essential foreground, middle-ground, background elements\n"
    "4. LIGHTING & COLOR: Key lighting direction and dominant color palette\n"
    "5. STYLE: Be VERY specific about the rendering style (photorealistic, "
    "cartoon, oil painting, watercolor, sketch, etc.)\n"
    "6. MOOD/ATMOSPHERE: Overall feeling in 1-2 words\n\n"
    "BE SPECIFIC about positioning and style while keeping your description "
    "brief and focused.\n\n"
)


def build_vision_analysis_prompt(original_prompt: str) -> str:
    """Build the text part of the vision-description request."""
    return VISION_ANALYSIS_INSTRUCTIONS + f'Original prompt: "{original_prompt.strip()}"\n'


# =========================================================
# PROMPT ENRICHMENT
# =========================================================
# Used by the chat-mediated adapter. The reply replaces the prompt sent to
# the image model; on any failure the caller keeps the unenriched prompt.

ENHANCER_SYSTEM_PROMPT = (
    "You are an expert prompt enhancer for image generation. Your task is to "
    "analyze an image and the user's prompt, then create a detailed, vivid prompt "
    "that captures both the essence of the original image and incorporates the "
    "user's requested changes. Focus on artistic style, composition, lighting, "
    "and important details."
)


def build_enhancement_prompt(prompt: str) -> str:
    """Build the user text of the enrichment request."""
    return (
        "I want to generate a new image based on this reference image.\n\n"
        f'Original prompt: "{prompt.strip()}"\n\n'
        "Please create an enhanced, detailed prompt that incorporates all the "
        "important visual elements from the reference image while applying the "
        "changes I'm requesting in my prompt. Make the description vivid and "
        "detailed - around 100-200 words."
    )
