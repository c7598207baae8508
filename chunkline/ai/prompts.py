"""Prompt assembly for each analysis kind in the catalog."""

from __future__ import annotations

from chunkline.chunks.models import ChunkRecord, ProjectRecord
from chunkline.jobs.models import ANALYSIS_KINDS

SYSTEM_PROMPT = "You are an academic writing assistant. Follow the instructions precisely and answer in the language of the source text."

_INSTRUCTIONS: dict[str, str] = {
  "summary": """## TASK: SUMMARY
Write a faithful, well-structured summary of the text below.
- Keep every key concept, definition and argument.
- Preserve the author's terminology.
- Use short paragraphs and bullet lists where they help study.""",
  "structural_analysis": """## TASK: STRUCTURAL ANALYSIS
Evaluate how the text is organized:
- **Structural coherence**: is the sequence of arguments logical?
- **Clarity of exposition**: are ideas introduced in an orderly way?
- **Balance**: are the parts proportionate?
- **Transitions**: how are sections connected?""",
  "methodological_analysis": """## TASK: METHODOLOGICAL ANALYSIS
Evaluate the methodological approach:
- **Fitness of the method** for the stated goals.
- **Description of the method**: is it clear and reproducible?
- **Application**: is the method applied consistently?""",
  "content_analysis": """## TASK: CONTENT ANALYSIS
Evaluate the substance of the text:
- **Accuracy** of claims and definitions.
- **Depth** of the discussion and use of sources.
- **Strengths** and **areas for improvement**, with concrete suggestions.""",
}


def instructions_for(analysis_kind: str) -> str:
  try:
    return _INSTRUCTIONS[analysis_kind]
  except KeyError as exc:
    raise ValueError(f"Unknown analysis kind '{analysis_kind}'. Allowed: {', '.join(ANALYSIS_KINDS)}") from exc


def build_prompt(analysis_kind: str, chunk: ChunkRecord, project: ProjectRecord) -> str:
  """Assemble the user prompt for one (chunk, analysis kind) unit."""
  context_lines = [f"- Faculty: {project.faculty}", f"- Topic: {project.topic}", f"- Document: {project.title}"]
  if project.level:
    context_lines.append(f"- Level: {project.level}")
  if chunk.section:
    context_lines.append(f"- Section: {chunk.section}")

  return "\n\n".join(
    [
      "## CONTEXT\n" + "\n".join(context_lines),
      instructions_for(analysis_kind),
      f"## TEXT: {chunk.title}\n\n{chunk.content}",
    ]
  )
