"""Prompt templates for fact extraction and memory reconciliation."""

from memory_service.memory.types import Message


FACT_EXTRACTION_INSTRUCTIONS = """You extract personal facts about the user from a conversation.

Record only information tied to the user's own life, experiences, preferences or plans.
Skip general knowledge, news and background information unless the user explicitly
connects it to themselves.

Write each fact as one short, self-contained sentence and return them as:

{"facts": [{"fact": "<fact 1>"}, {"fact": "<fact 2>"}]}

Facts usually fall into one of these areas:
1. Personal details - "I am 32 years old", "My name is Alex."
2. Family - "I have a sister named Emily."
3. Professional details - "I work as a software engineer at TechCorp."
4. Sports - "I play basketball every weekend."
5. Travel - "I'm planning a trip to Italy this summer."
6. Food - "I love trying new vegan recipes."
7. Music - "I recently saw Coldplay live."
8. Health - "I scheduled a check-up for next week."
9. Technology - "I just bought the latest smartphone."
10. Hobbies - "I love painting in my free time."
11. Fashion - "I prefer sustainable clothing brands."
12. Entertainment - "I binge-watched my favorite show."
13. Milestones - "I graduated from college last year."
14. Preferences - "I prefer non-fiction over fiction."
15. Misc - anything else that is clearly about the user.

Ignore statements like "Most people celebrate birthdays" or "The game is tonight"
unless the user says how it concerns them. If nothing personal was said, return
{"facts": []}.

Return only the JSON object, with no explanation."""


FACT_EXTRACTION_PROMPT: list[Message] = [
    Message(role="system", content=FACT_EXTRACTION_INSTRUCTIONS),
]


MEMORY_MANAGER_SYSTEM = (
    "You are a memory manager. Decide how newly learned facts should be merged "
    "into the memories that are already stored."
)


MEMORY_UPDATE_TEMPLATE = """<examples>
<example>
<new_facts>
{{"facts": [{{"fact": "John prefers bananas over apples"}}]}}
</new_facts>
<old_memory>
[{{"id": "0", "text": "John likes apples"}}]
</old_memory>
<output>
{{"memory": [{{"id": "0", "text": "John prefers bananas over apples", "event": "UPDATE", "old_memory": "John likes apples"}}]}}
</output>
</example>
<example>
<new_facts>
{{"facts": [{{"fact": "Clouds are white"}}]}}
</new_facts>
<old_memory>
[{{"id": "0", "text": "The sky is blue"}}]
</old_memory>
<output>
{{"memory": [{{"text": "Clouds are white", "event": "ADD"}}]}}
</output>
</example>
</examples>

Stored memories (each has a short numeric id):

<old_memory>
{old_memory_json}
</old_memory>

Newly learned facts:

<new_facts>
{new_facts_json}
</new_facts>

For every new fact choose exactly one event:
- "ADD": the fact is new and nothing stored covers it.
- "UPDATE": the fact changes the meaning of a stored memory. Use that memory's id,
  put the merged sentence in "text" and the previous sentence in "old_memory".
- "DELETE": the fact contradicts or invalidates a stored memory. Use that memory's id.
- "NONE": the fact is already stored.

Rules:
- Only use ids that appear in <old_memory>. Never invent ids. ADD entries have no id.
- A related but separate fact is an ADD, not an UPDATE.
- Updated text must stand on its own without referring to the old memory.
- Keep each piece of information in its own entry.

Respond with JSON only:
{{"memory": [{{"id": "<id for UPDATE/DELETE>", "text": "<text>", "event": "ADD|UPDATE|DELETE|NONE", "old_memory": "<previous text, UPDATE only>"}}]}}"""


def memory_update_messages(old_memory_json: str, new_facts_json: str) -> list[Message]:
    """Build the reconciliation conversation for the given old/new JSON views."""
    return [
        Message(role="system", content=MEMORY_MANAGER_SYSTEM),
        Message(
            role="user",
            content=MEMORY_UPDATE_TEMPLATE.format(
                old_memory_json=old_memory_json,
                new_facts_json=new_facts_json,
            ),
        ),
    ]
