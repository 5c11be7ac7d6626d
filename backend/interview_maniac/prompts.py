from __future__ import annotations

from typing import Literal

from .scoring import RubricScores, weakest_dimensions

PROMPT_VERSION = "abt-v1-2026-10"

GenerationType = Literal["interview-questions", "sample-answers", "feedback", "practice-scenarios", "general"]
StoryFocus = Literal["basic", "leadership", "technical", "collaboration", "innovation"]
RoleLevel = Literal["junior", "mid", "senior", "executive"]

STRUCTURED_GENERATION_TYPES: frozenset[str] = frozenset(
    {"interview-questions", "sample-answers", "feedback", "practice-scenarios"}
)

DEFAULT_SCORING_CRITERIA: tuple[str, ...] = (
    "Clarity and coherence",
    "Specific examples and details",
    "Quantifiable results/impact",
    "Professional language and structure",
    "Relevance to interview context",
)

ABT_SYSTEM_PROMPT = """You are an expert interview coach who evaluates ABT (Accomplishment-Because-Therefore) stories for job interviews.

ABT framework:
- Accomplishment: what the candidate achieved or did
- Because: why it was challenging, important or noteworthy
- Therefore: the measurable impact, result or outcome

Score each criterion on a 0-5 scale:
1. clarity: is the story clear and easy to follow?
2. relevance: does it demonstrate skills employers value?
3. impact: how significant was the outcome?
4. metrics: are results quantified with concrete numbers?
5. storyArc: does it progress from accomplishment to because to therefore?
6. concision: is it focused, without unnecessary detail?

Give constructive, actionable feedback. Always respond with valid JSON."""

RUBRIC_RESPONSE_TEMPLATE = """{
  "scores": {
    "clarity": 0,
    "relevance": 0,
    "impact": 0,
    "metrics": 0,
    "storyArc": 0,
    "concision": 0
  },
  "totalScore": 0,
  "averageScore": 0.0,
  "feedback": {
    "strengths": ["specific strengths"],
    "improvements": ["areas needing improvement"],
    "suggestions": ["actionable suggestions"]
  },
  "overallAssessment": "brief overall assessment"
}"""

ABT_GENERATION_PROMPTS: dict[str, str] = {
    "basic": (
        "Create a compelling interview story using the ABT (Accomplishment-Because-Therefore) framework. "
        "Use specific details and metrics, show personal ownership and end with measurable outcomes."
    ),
    "leadership": (
        "Create a leadership-focused ABT interview story. Cover team size and dynamics, the leadership "
        "challenge, how decisions were made, influence without authority and results achieved through others."
    ),
    "technical": (
        "Create a technical achievement ABT story. Cover the technical complexity, the problem-solving "
        "method, the tools used and performance improvements, while staying accessible to non-technical interviewers."
    ),
    "collaboration": (
        "Create a collaboration-focused ABT story. Cover stakeholder diversity, alignment and communication, "
        "conflict resolution, your specific role and the shared outcome."
    ),
    "innovation": (
        "Create an innovation-focused ABT story. Cover how the problem was identified, the unconventional "
        "approach, risk management, adoption and the impact at scale."
    ),
}

INDUSTRY_PROMPTS: dict[str, str] = {
    "technology": "Emphasize technical solutions, agile delivery, user impact, scale and data-driven decisions.",
    "finance": "Emphasize risk management, process efficiency, regulatory compliance and revenue or cost impact.",
    "healthcare": "Emphasize patient outcomes and safety, compliance, quality metrics and interdisciplinary work.",
    "consulting": "Emphasize client relationships, problem diagnosis, stakeholder alignment and measured value delivery.",
    "startup": "Emphasize resource constraints, rapid iteration, customer discovery, growth and adaptability.",
}

ROLE_LEVEL_PROMPTS: dict[str, str] = {
    "junior": "Tailor the story for a junior role: learning mindset, initiative and contribution within scope.",
    "mid": "Tailor the story for a mid-level role: independent ownership, cross-functional work and mentoring.",
    "senior": "Tailor the story for a senior role: strategy, influence, system-level impact and stakeholder management.",
    "executive": "Tailor the story for an executive role: organizational vision, enterprise impact and P&L responsibility.",
}


def build_abt_scoring_prompt(*, role: str, industry: str, achievement: str, because: str, therefore: str) -> str:
    return (
        f"{ABT_SYSTEM_PROMPT}\n\n"
        "Please analyze and score this ABT interview story.\n\n"
        "Context:\n"
        f"- Role: {role}\n"
        f"- Industry: {industry}\n\n"
        "ABT Story:\n"
        f"Accomplishment: {achievement}\n"
        f"Because: {because}\n"
        f"Therefore: {therefore}\n\n"
        "Scale: 0-1 poor, 2 below average, 3 acceptable, 4 good, 5 outstanding.\n"
        f"promptVersion={PROMPT_VERSION}\n"
        "Respond with JSON in exactly this format:\n"
        f"```json\n{RUBRIC_RESPONSE_TEMPLATE}\n```\n"
        "totalScore must equal the sum of the scores and averageScore must be totalScore divided by 6."
    )


def build_improvement_prompt(
    *,
    role: str,
    industry: str,
    achievement: str,
    because: str,
    therefore: str,
    scores: RubricScores,
) -> str:
    weakest = weakest_dimensions(scores)
    return (
        f"Based on the scoring analysis, the weakest areas for this ABT story are: {', '.join(weakest) or 'none'}.\n\n"
        "Original story context:\n"
        f"- Role: {role}\n"
        f"- Industry: {industry}\n"
        f"- Achievement: {achievement}\n"
        f"- Because: {because}\n"
        f"- Therefore: {therefore}\n\n"
        "Provide 3-5 specific, actionable recommendations to improve this story, focusing on the weakest areas.\n"
        'Format as a JSON array of strings: ["suggestion 1", "suggestion 2"]'
    )


def build_generation_prompt(*, prompt: str, generation_type: str, context: str | None) -> str:
    if generation_type == "interview-questions":
        return (
            f"Generate interview questions based on the following context: {context or 'general interview'}\n\n"
            f"User request: {prompt}\n\n"
            "Provide 5-10 relevant interview questions. Format as a JSON array of strings."
        )

    if generation_type == "sample-answers":
        return (
            "Generate sample answers for an interview question using the ABT (Accomplishment-Because-Therefore) framework.\n\n"
            f"Question: {prompt}\n\n"
            f"Context: {context or 'General professional context'}\n\n"
            "Provide 2-3 different sample answers. Format as JSON:\n"
            '{"answers": [{"accomplishment": "...", "because": "...", "therefore": "...", "fullAnswer": "..."}]}'
        )

    if generation_type == "feedback":
        return (
            "Provide constructive feedback on the following interview response:\n\n"
            f'"{prompt}"\n\n'
            f"Context: {context or 'General interview context'}\n\n"
            "Cover what works well, areas for improvement, specific suggestions and alternative phrasing. Format as JSON:\n"
            '{"strengths": ["..."], "improvements": ["..."], "suggestions": ["..."], "alternatives": ["..."]}'
        )

    if generation_type == "practice-scenarios":
        return (
            f"Generate realistic practice scenarios for interview preparation based on: {prompt}\n\n"
            f"Context: {context or 'General professional environment'}\n\n"
            "Provide 3-5 scenarios, each with a situation, key challenges, expected outcomes and skills tested. "
            "Format as a JSON array of scenario objects."
        )

    prefix = f"Context: {context}\n\n" if context else ""
    return (
        f"{prefix}{prompt}\n\n"
        "Please provide a helpful and detailed response appropriate for interview preparation and professional development."
    )


def build_improve_story_prompt(*, story: str, role: str, industry: str, feedback: str | None) -> str:
    feedback_block = f'Previous feedback received:\n"{feedback.strip()}"\n\n' if feedback and feedback.strip() else ""
    fifth_goal = "Addresses the previous feedback provided" if feedback_block else "Shows clear measurable results"
    return (
        f"You are an expert interview coach helping improve a candidate's story for a {role} position "
        f"in the {industry} industry.\n\n"
        f'Original story:\n"{story.strip()}"\n\n'
        f"{feedback_block}"
        "Please provide an improved version of this story that:\n"
        "1. Is more compelling and specific\n"
        "2. Better demonstrates relevant skills and achievements\n"
        "3. Uses the ABT (Accomplishment-Because-Therefore) framework more effectively\n"
        "4. Is concise but impactful\n"
        f"5. {fifth_goal}\n\n"
        "Provide your response in this exact JSON format:\n"
        '{"improvedStory": "Your improved version here", "rationale": "Explanation of what you changed and why"}'
    )


def build_criteria_scoring_prompt(*, content: str, criteria: list[str] | None) -> str:
    safe_criteria = [item.strip() for item in (criteria or []) if item and item.strip()] or list(DEFAULT_SCORING_CRITERIA)
    return (
        f"Please analyze and score the following interview response based on these criteria: {', '.join(safe_criteria)}.\n\n"
        f'Content to score:\n"{content}"\n\n'
        "Provide an overall score from 1-10, a 1-10 score per criterion, detailed feedback, strengths and "
        "areas for improvement. Format as JSON:\n"
        '{"overallScore": 0, "criteriaScores": {"criterion": 0}, "feedback": "...", '
        '"strengths": ["..."], "improvements": ["..."]}'
    )


def build_story_generation_prompt(
    *,
    role: str,
    industry: str,
    focus: str,
    role_level: str | None,
    notes: str | None,
) -> str:
    sections = [ABT_GENERATION_PROMPTS.get(focus, ABT_GENERATION_PROMPTS["basic"])]

    industry_hint = INDUSTRY_PROMPTS.get(industry.strip().lower())
    if industry_hint:
        sections.append(industry_hint)
    if role_level and role_level in ROLE_LEVEL_PROMPTS:
        sections.append(ROLE_LEVEL_PROMPTS[role_level])

    sections.append(f"Role: {role}\nIndustry: {industry}")
    if notes and notes.strip():
        sections.append(f"Candidate notes:\n{notes.strip()}")

    sections.append(
        "Structure your response as a JSON object with these exact fields:\n"
        '{"accomplishment": "...", "because": "...", "therefore": "...", "fullStory": "..."}'
    )
    return "\n\n".join(sections)
