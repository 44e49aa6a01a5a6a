"""Spoken phrases and prompt templates for the interviewer."""
import json

from database import SessionContext

# ── Fixed phrases ────────────────────────────────────────

FALLBACK_ACK = "Thanks."
FALLBACK_CONTINUE = "Let's continue."
FALLBACK_QA_ANSWER = "That's a good thing to ask the team directly. Do you have any other questions?"

# Bridges between questions acknowledge without judging the answer.
NEUTRAL_BRIDGES = (
    "Thanks for sharing.",
    "Okay, thank you.",
    "Got it.",
    "Alright, thanks.",
)

HOLD_ACK = "Of course, take your time. Just let me know when you're ready."
HOLD_CHECK_IN = "Just checking in. Are you ready to continue?"

NUDGE_GREETING = "Hi, are you there? Whenever you're ready, just let me know how you're doing."
NUDGE_INTERVIEW = "Are you still with me? Take your time, and let me know when you're ready to continue."
SILENCE_GOODBYE = (
    "It seems we've lost you, so I'll end the interview here. "
    "Thank you for your time, and feel free to reconnect later."
)

CLOSING_QUESTIONS_DONE = "That covers all my questions. Do you have any questions for me?"
CLOSING_TIME_UP = "We're nearly out of time, so let's stop the questions there. Do you have any questions for me?"
FINAL_GOODBYE = "Great meeting you! We will be in touch. Have a great day!"
HARD_LIMIT_GOODBYE = (
    "I'm sorry, but we've reached the end of our scheduled time, so I have to wrap up here. "
    "Thank you so much for your time today. Goodbye!"
)


def greeting(ctx: SessionContext) -> str:
    return (
        f"Hi there! Thanks for joining. I'm the Hiring Manager for the {ctx.role} role "
        f"at {ctx.company_name}. How are you doing today?"
    )


# ── Live decision prompts ────────────────────────────────

def small_talk_intent_prompt(said: str) -> str:
    return f"""You are listening to a candidate at the very start of a job interview.
The interviewer just asked how they are doing. The candidate said:
"{said}"

Decide whether the candidate is asking for a moment before starting (for example
"give me a second", "hold on", "one moment") or is ready to go on.

Return ONLY JSON: {{"intent": "HOLD" | "CONTINUE"}}"""


def small_talk_transition_prompt(said: str, ctx: SessionContext) -> str:
    return (
        f"You are a friendly Hiring Manager for the {ctx.role} role at {ctx.company_name}. "
        f'The candidate said: "{said}". Reply naturally in one or two short sentences and say '
        "you'd like to start with the first question. Do not ask the question itself."
    )


def answer_intent_prompt(question: str, answer: str, ctx: SessionContext) -> str:
    return f"""You are interviewing a candidate for the {ctx.role} role ({ctx.experience} level).

Question asked: "{question}"
Candidate answer: "{answer}"

Classify the answer:
- "HOLD": the candidate asks for time to think or to pause.
- "FOLLOW_UP": the answer is very short or vague and one clarifying probe would help.
- "MOVE_ON": the answer is complete enough to continue.

If FOLLOW_UP, write one short, neutral probing question in "probe".
Never praise or criticise the answer.

Return ONLY JSON: {{"intent": "HOLD" | "FOLLOW_UP" | "MOVE_ON", "probe": "..."}}"""


def follow_up_transition_prompt(reply: str) -> str:
    return (
        f'A candidate just answered a follow-up question with: "{reply}". '
        "Write one very short, neutral acknowledgement (under eight words) before the next "
        "question. Do not evaluate the answer, do not ask anything. Return only the phrase."
    )


def done_asking_prompt(said: str) -> str:
    return f"""At the end of a job interview the candidate was asked whether they have any questions.
They said: "{said}"

Does this mean they have no (more) questions and are done?
Return ONLY JSON: {{"done": true | false}}"""


def candidate_question_prompt(said: str, ctx: SessionContext) -> str:
    context = ctx.job_description[:1000] or "No job description provided."
    return (
        f"You are the Hiring Manager for {ctx.role} at {ctx.company_name} ({ctx.industry}). "
        f"Job context: {context}\n"
        f'The candidate asked: "{said}". Answer briefly in at most three spoken sentences, '
        'then ask "Any other questions?". No markdown.'
    )


# ── Session setup ────────────────────────────────────────

QUESTION_GENERATION_PROMPT = """You are an expert hiring manager preparing a spoken interview.
Generate 5-7 sharp, relevant interview questions based on the candidate's profile and the job context.

RULES:
1. If a Job Description is provided, ask specifically about skills mentioned there.
2. If a Company/Industry is provided, frame questions relevant to that sector.
3. If a region is provided, respect local professional norms.
4. Keep questions conversational, short and direct. Prefer "Tell me about..." or "How do you...".
5. Return ONLY a valid JSON object, no markdown.

Example: {"questions": ["Walk me through your experience with React.", "How do you handle tight deadlines?"]}
"""


def question_generation_prompt(fields: dict) -> str:
    message = (
        f"Candidate Role: {fields['role']}\n"
        f"Experience: {fields['experience']}\n"
        f"Duration: {fields['duration_minutes']} mins."
    )
    if fields.get("region"):
        message += f"\nRegion: {fields['region']}"
    if fields.get("company_name"):
        message += f"\nTarget Company: {fields['company_name']}"
    if fields.get("industry"):
        message += f"\nIndustry: {fields['industry']}"
    if fields.get("resume_text"):
        message += f"\n\nCANDIDATE RESUME:\n{fields['resume_text'][:3000]}"
    if fields.get("job_description"):
        message += f"\n\nJOB DESCRIPTION:\n{fields['job_description'][:1000]}"
    return f"{QUESTION_GENERATION_PROMPT}\n{message}\nPlease return the results in JSON format."


# ── Realtime upstream ────────────────────────────────────

def build_realtime_instructions(ctx: SessionContext) -> str:
    has_jd = bool(ctx.job_description.strip())
    has_resume = bool(ctx.resume_text.strip())

    context = (
        f"- Interview Duration: {ctx.duration_minutes} minutes.\n"
        f"- Region/Culture: {ctx.region}\n"
        f"- Industry Context: {ctx.industry}\n"
    )
    if has_jd:
        context += f'- Job Description: "{ctx.job_description[:1000]}"\n'
    if has_resume:
        context += f'- Candidate Resume: "{ctx.resume_text[:2000]}"\n'

    experience_step = "2. Experience (40%): Ask about their past work experience in general."
    if has_resume:
        experience_step = "2. Experience (40%): Ask specific questions based on their resume (\"I see you used X at Y...\")."
    deep_dive_step = f"3. Deep Dive (40%): Ask technical or behavioral questions relevant to the {ctx.role} role."
    if has_jd:
        deep_dive_step = "3. Deep Dive (40%): Ask technical or behavioral questions strictly based on the job description."

    questions = ""
    if ctx.questions:
        questions = "\nPrepared questions, in order:\n" + "\n".join(
            f"- {q}" for q in ctx.questions
        ) + "\n"

    return f"""# ROLE
You are an experienced Hiring Manager at {ctx.company_name} in the {ctx.industry} industry.
You are interviewing a candidate for the {ctx.role} position ({ctx.experience} level) based in {ctx.region}.
Speak in the language matching the locale {ctx.language}.

# CONTEXT
{context}{questions}
# INTERVIEW STRUCTURE
1. Intro (1 min): Briefly welcome them and ask a casual icebreaker.
{experience_step}
{deep_dive_step}
4. Q&A (remaining time): Ask if they have questions for you. Answer them based on the company context.
5. Closing: Thank them, then call the end_interview tool.

# GUIDELINES
- Ask ONE question at a time, then stop and wait for the answer.
- Acknowledge answers neutrally ("Thanks.", "Got it."). Never praise or criticise an answer.
- System time checks will tell you how many minutes remain. Follow them.
- Keep responses under two sentences so the candidate does most of the talking.
- Short acknowledgements from the candidate ("mm-hm", "yeah") are not turns; keep going.
- Do NOT output markdown. Do NOT mention AI or scoring."""


def time_check_note(minutes_left: int) -> str:
    unit = "minute" if minutes_left == 1 else "minutes"
    note = f"[Time check] About {minutes_left} {unit} remain in this interview."
    if minutes_left <= 3:
        note += " Stop asking new questions: move to the candidate's questions and close politely."
    elif minutes_left <= 5:
        note += " Skip follow-ups and prioritise the remaining key questions."
    return note


def say_exactly(text: str) -> str:
    return f'Say exactly this with a friendly tone, then stop: "{text}"'


# ── Post-interview reports ───────────────────────────────

def coaching_report_prompt(report_ctx: dict) -> str:
    return f"""Act as an Elite Interview Coach.
Role: {report_ctx['role']} ({report_ctx['seniority']})
Expected Duration: {report_ctx['duration_minutes']} mins. Actual: {report_ctx['actual_duration_minutes']:.1f} mins.

TRANSCRIPT:
{report_ctx['transcript_text']}

TASK:
1. Pacing: Did they fill the time with quality content or fluff?
2. STAR Method: For behavioral questions, did they use Situation-Task-Action-Result?
3. Redo: Identify the 3 weakest answers and write a better version for each.

Return ONLY JSON with EXACTLY this structure:
{{
  "pacing_score": 1-10,
  "pacing_feedback": "string",
  "star_analysis": [{{"question": "string", "has_result": true, "feedback": "string"}}],
  "weakest_answers": [{{"original_summary": "string", "coached_version": "string"}}]
}}"""


def screening_report_prompt(report_ctx: dict) -> str:
    rubric = report_ctx.get("rubric") or "Standard Technical Competence, Communication, and Culture Fit."
    return f"""Act as a Senior Hiring Manager.
Role: {report_ctx['role']} ({report_ctx['seniority']})
Rubric: {rubric}

TRANSCRIPT:
{report_ctx['transcript_text']}

TASK:
1. Score: Assign 1-5 for each competency in the rubric.
2. Seniority Check: Does their depth match {report_ctx['seniority']} level?
3. Red Flags: Any contradictions or major gaps?

Return ONLY JSON with EXACTLY this structure:
{{
  "overall_score": 1-5,
  "decision": "STRONG_HIRE" | "HIRE" | "NO_HIRE",
  "rubric_scores": [{{"category": "string", "score": 1, "evidence": "string"}}],
  "seniority_analysis": "string",
  "red_flags": ["string"]
}}
Rubric categories: {json.dumps([c.strip() for c in rubric.split(',') if c.strip()])}"""
