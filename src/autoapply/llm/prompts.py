from __future__ import annotations

GROUNDED_ONLY_INSTRUCTIONS = """
You write job application content for a candidate. Use only facts stated in the candidate profile
you are given. Never infer, embellish, or invent employers, skills, tools, metrics, or dates.
Reply with a single JSON object and nothing else.
""".strip()

EVIDENCE_MAPPING_PROMPT = """
Map each job requirement to evidence from the candidate profile.
Return strict JSON with keys:
- requirements: array of objects with keys:
  - requirement: string (copied from the job requirements)
  - evidence: string (one line copied verbatim from the candidate bullet bank, or "" when no bullet
    supports it; never quote skills, experience, or project summaries)
  - confidence: one of [strong, medium, weak]

Use strong only when the evidence directly demonstrates the requirement, medium for related
experience, weak when support is indirect or missing.

Job: {title} at {company}
Job requirements:
{requirements}

Candidate skills: {skills}
Candidate experience:
{experience}
Candidate projects:
{projects}
Candidate bullet bank:
{bullet_bank}
""".strip()

SCREENING_ANSWERS_PROMPT = """
Answer the screening questions for this application from the candidate profile.
Return strict JSON with keys:
- answers: array of objects with keys:
  - question: string (copied verbatim)
  - answer: string (two or three sentences at most, drawn from the profile; say plainly when the
    profile does not cover the question)

Job: {title} at {company}
Questions:
{questions}

Candidate skills: {skills}
Candidate education:
{education}
Candidate experience:
{experience}
Candidate projects:
{projects}
""".strip()

GROUNDING_CHECK_PROMPT = """
Decide whether every claim in the generated application content is traceable to the candidate
profile. Flag any skill, tool, employer, metric, or credential that the profile does not state.
Return strict JSON with keys:
- is_grounded: boolean
- hallucination_risks: string[] (one entry per unsupported claim, empty when grounded)
- confidence_score: number (0..100, how confident you are the content is fully grounded)
- reasoning: string

Candidate profile JSON:
{profile_json}

Candidate bullet bank:
{bullet_bank}

Generated requirement evidence JSON:
{evidence_json}

Generated screening answers JSON:
{answers_json}
""".strip()

SKIP_EXPLANATION_PROMPT = """
A job was skipped automatically for a candidate. Explain why and how the candidate could qualify
for similar roles.
Return strict JSON with keys:
- reasoning: string (two or three sentences naming the concrete gaps)
- missing_skills: string[]
- missing_experience: string[]
- suggestions: object with keys:
  - skills_to_learn: string[] (three to five items)
  - projects_to_add: string[]
  - resume_improvements: string[]

Job: {title} at {company} ({location})
Required skills: {job_skills}
Requirements: {requirements}
Skip reason: {skip_reason}
Match score: {match_score}

Candidate skills: {skills}
Candidate experience:
{experience}
Candidate projects:
{projects}
""".strip()

PROMPTS_BY_KIND: dict[str, str] = {
    "evidence_mapping": EVIDENCE_MAPPING_PROMPT,
    "screening_answers": SCREENING_ANSWERS_PROMPT,
    "grounding_check": GROUNDING_CHECK_PROMPT,
    "skip_explanation": SKIP_EXPLANATION_PROMPT,
}
