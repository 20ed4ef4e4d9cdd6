"""
Planning Module - Prompt Templates
==================================
Prompt templates for planning, effort estimation, task breakdown,
plan adjustment and review. Rendered with ``.format(...)`` into a single
prompt string before being sent to the completion provider.
"""

from langchain_core.prompts import ChatPromptTemplate


EFFORT_DEFINITIONS = """EFFORT DEFINITIONS:
- low: small change in one or a few files, little new logic
- medium: several files or components, new functions or classes
- high: significant work, architectural change, intricate algorithms or deep refactoring"""

TASK_SCOPE_RULES = """RULES:
- Only include coding tasks a developer performs in the codebase
- Do NOT include project management, deployment, manual testing, documentation or approval steps
- Order tasks so each one can build on the previous ones"""


def context_block(codebase_context: str) -> str:
    """Codebase context section placed at the top of planning prompts."""
    if codebase_context:
        return f"Codebase context:\n```\n{codebase_context}\n```"
    return "No codebase context is available; plan from the feature description alone."


# =============================================================================
# FEATURE PLANNING
# =============================================================================

PLAN_FEATURE_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a senior engineer turning a feature request into an implementation plan.

""" + TASK_SCOPE_RULES + """

""" + EFFORT_DEFINITIONS + """

RESPONSE FORMAT - respond with exactly ONE JSON object and nothing else.

If you need clarification before you can plan:
{{"clarificationNeeded": {{"question": "<precise question>", "options": ["<option>", "<option>"], "allowsText": true}}}}
("options" is optional; set "allowsText" to false when only the options are valid answers)

Otherwise:
{{"tasks": [{{"description": "<coding task>", "effort": "low|medium|high"}}]}}"""),
    ("user", """{context}

Feature request: "{feature_description}"

Create the implementation plan.""")
])

PLAN_FEATURE_TEXT_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a senior engineer turning a feature request into an implementation plan.

""" + TASK_SCOPE_RULES + """

""" + EFFORT_DEFINITIONS + """

If you need clarification before you can plan, reply ONLY with:
[CLARIFICATION_NEEDED]
<precise question>
Options: [<option>, <option>]   (only when offering choices)
MULTIPLE_CHOICE_ONLY            (only when free-text answers are not acceptable)
[END_CLARIFICATION]

Otherwise reply with one task per line, each formatted as:
[effort] Task description

Start directly with the first task. No introduction, headings or summary."""),
    ("user", """{context}

Feature request: "{feature_description}"

Create the implementation plan.""")
])


# =============================================================================
# EFFORT ESTIMATION
# =============================================================================

EFFORT_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """Estimate the implementation effort of one coding task.

""" + EFFORT_DEFINITIONS + """

Respond with ONE JSON object:
{{"effort": "low|medium|high", "reasoning": "<one sentence>"}}"""),
    ("user", "Task: {task_description}")
])


# =============================================================================
# TASK BREAKDOWN
# =============================================================================

BREAKDOWN_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You split one high-effort coding task into smaller subtasks.

CRITICAL INSTRUCTIONS:
1. Produce between {min_subtasks} and {max_subtasks} subtasks
2. Every subtask is a concrete coding step that can be completed on its own
3. Every subtask has effort "low" or "medium" (prefer "{preferred_effort}"); never "high"
4. Together the subtasks fully cover the original task
5. Order them so later subtasks build on earlier ones

""" + EFFORT_DEFINITIONS + """

Respond with ONE JSON object and nothing else:
{{"subtasks": [{{"description": "<subtask>", "effort": "low|medium"}}]}}"""),
    ("user", """Task to split: "{task_description}"

Additional context:
{context}""")
])


# =============================================================================
# PLAN ADJUSTMENT
# =============================================================================

ADJUST_PLAN_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You revise an existing implementation plan according to a change request.

""" + TASK_SCOPE_RULES + """

""" + EFFORT_DEFINITIONS + """

RULES FOR REVISIONS:
- Return the COMPLETE revised task list, not only the changes
- Keep the "id" of every task you keep or modify; omit "id" for new tasks
- Tasks you leave out are removed from the plan
- Completed tasks should normally be kept unchanged

RESPONSE FORMAT - respond with exactly ONE JSON object and nothing else.

If you need clarification first:
{{"clarificationNeeded": {{"question": "<precise question>", "options": ["<option>"], "allowsText": true}}}}

Otherwise:
{{"tasks": [{{"id": "<existing id, optional>", "description": "<coding task>", "effort": "low|medium|high"}}]}}"""),
    ("user", """{context}

Original feature request: "{original_request}"

Current plan:
{current_tasks}

Recent history:
{recent_history}

Requested adjustment: "{adjustment_request}"

Produce the revised plan.""")
])


# =============================================================================
# REVIEW
# =============================================================================

REVIEW_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You review code changes made for a feature and list the follow-up coding work still needed.

""" + TASK_SCOPE_RULES + """

""" + EFFORT_DEFINITIONS + """

- Only list NEW work: fixes, missing pieces, tests the change still needs
- Do not repeat tasks that are already in the current plan
- Return an empty list when nothing is left to do

Respond with ONE JSON object and nothing else:
{{"tasks": [{{"description": "<coding task>", "effort": "low|medium|high"}}]}}"""),
    ("user", """Original feature request: "{original_request}"

Current plan:
{current_tasks}

Changes under review:
```diff
{diff}
```""")
])


# =============================================================================
# CLARIFICATION FOLLOW-UP
# =============================================================================

def resume_prompt(original_prompt: str, user_response: str) -> str:
    """Original planning prompt followed by the user's answer to the model's question."""
    return (
        f"{original_prompt}\n\n"
        f"User clarification response: {user_response}\n\n"
        "Now, please continue with the original task of planning the feature implementation steps."
    )
