"""
Translation prompt assembly.
Reads a chunk's transcript and optional reference SRT and fills the template.
"""

import logging
import re
from pathlib import Path

from dualsub.core.constants import (
    IssueType,
    PLACEHOLDER_TRANSCRIPT,
    PLACEHOLDER_REFERENCE,
    PLACEHOLDER_LANGUAGE,
    PLACEHOLDER_XML_EXAMPLE,
    REFERENCE_UNAVAILABLE,
)
from dualsub.core.error_codes import ChunkError
from dualsub.core.models import Chunk

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = """\
<source_transcript>
{ADJUSTED_TRANSCRIPT}
</source_transcript>

<reference_subtitles>
{REFERENCE_SRT}
</reference_subtitles>

The reference subtitles above are accurate for timing but their wording needs
work. The source transcript carries the real meaning, tone and honorifics.
Go through the reference subtitles line by line. Keep each line's number and
timing, and write a new English translation and a new {TARGET_LANGUAGE_NAME}
translation based on the source transcript. The two tracks were made
independently, so match lines by meaning rather than by number. If no source
line matches, do your best or keep the English line.

Respond with one block per reference line, in this exact format (do not put
sublines in individual markdown blocks, and close every tag):
<subline>
<original_number>XXX</original_number>
<original_line>XXX</original_line>
<original_timing>XXX</original_timing>
<better_english_translation>XXX</better_english_translation>
{TARGET_LANGUAGE_XML_EXAMPLE}
</subline>
"""

_WHITESPACE_RE = re.compile(r'\s+')
_PLACEHOLDER_RE = re.compile('|'.join(re.escape(p) for p in (
    PLACEHOLDER_TRANSCRIPT, PLACEHOLDER_REFERENCE,
    PLACEHOLDER_LANGUAGE, PLACEHOLDER_XML_EXAMPLE,
)))


def language_tag(language: str) -> str:
    """'Brazilian Portuguese' -> 'brazilian_portuguese'."""
    return _WHITESPACE_RE.sub('_', language.strip().lower())


def load_prompt_template(path: str | Path | None = None) -> str:
    """Load a custom template, or the built-in one when no path is given."""
    if not path:
        return DEFAULT_TEMPLATE
    path = Path(path)
    try:
        template = path.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise ChunkError(IssueType.PROMPT_GEN,
                         f"Prompt template unreadable: {path} ({e})")
    logger.debug("Loaded prompt template from %s", path)
    return template


def select_target_language(languages: list[str]) -> str:
    """One language per prompt: the first configured one wins."""
    if not languages:
        raise ChunkError(IssueType.PROMPT_GEN, "No target language configured")
    if len(languages) > 1:
        logger.warning("Multiple target languages configured, only using the first: %s",
                       languages[0])
    return languages[0]


def build_translation_prompt(chunk: Chunk, template: str,
                             target_languages: list[str]) -> str:
    """
    Fill the template for one chunk.

    Raises ChunkError(PromptGenError) when the source transcript is missing
    or unreadable. A missing reference SRT only logs a warning.
    """
    language = select_target_language(target_languages)
    part = chunk.part_number

    if not chunk.source_transcript_path:
        raise ChunkError(IssueType.PROMPT_GEN, "Source transcript path not set")
    transcript_path = Path(chunk.source_transcript_path)
    try:
        transcript = transcript_path.read_text(encoding='utf-8')
    except FileNotFoundError:
        raise ChunkError(IssueType.PROMPT_GEN, f"Source transcript missing: {transcript_path}")
    except (OSError, UnicodeDecodeError) as e:
        raise ChunkError(IssueType.PROMPT_GEN,
                         f"Source transcript unreadable: {transcript_path} ({e})")

    reference = ""
    if chunk.reference_srt_path:
        try:
            reference_path = Path(chunk.reference_srt_path)
            reference = reference_path.read_text(encoding='utf-8', errors='replace')
        except OSError:
            logger.warning("[Chunk %d] Reference SRT unreadable: %s. Proceeding without it.",
                           part, chunk.reference_srt_path)
    else:
        logger.warning("[Chunk %d] No reference SRT. Proceeding without it.", part)

    tag = language_tag(language)
    xml_example = f"<{tag}_translation>[Your translation for {language}]</{tag}_translation>"

    values = {
        PLACEHOLDER_TRANSCRIPT: transcript,
        PLACEHOLDER_REFERENCE: reference or REFERENCE_UNAVAILABLE,
        PLACEHOLDER_LANGUAGE: language,
        PLACEHOLDER_XML_EXAMPLE: xml_example,
    }
    # Single pass over the template: inserted text is never rescanned
    prompt = _PLACEHOLDER_RE.sub(lambda m: values[m.group(0)], template)

    logger.debug("[Chunk %d] Generated translation prompt for English + %s", part, language)
    return prompt
