"""System prompt for the CRM chat assistant."""

from __future__ import annotations

from crm_assistant.domain.models import CrmContext

BASE_PROMPT = "You are an AI assistant for a CRM system."

CLOSING_INSTRUCTION = (
    "Always provide helpful, accurate information about the user's CRM data "
    "and assist with contact management tasks."
)

RECENT_CONTACTS_IN_PROMPT = 10
RECENT_ACTIVITIES_IN_PROMPT = 5


def _contact_line(contact) -> str:
    line = f"- {contact.name} ({contact.email})"
    if contact.company:
        line += f" at {contact.company}"
    if contact.tags:
        line += f" - Tags: {', '.join(contact.tags)}"
    return line


def create_system_prompt(crm_context: CrmContext | None, related_context: str = "") -> str:
    """Build the chat system prompt, embedding a snapshot of the user's CRM data.

    *related_context* holds rendered similarity matches for the contact the
    user is asking about; it is added as its own section when present.
    """
    prompt = BASE_PROMPT

    if crm_context is not None:
        top_companies = "\n".join(
            f"- {name}: {count} contacts" for name, count in crm_context.top_companies
        )
        contacts = "\n".join(
            _contact_line(c) for c in crm_context.recent_contacts[:RECENT_CONTACTS_IN_PROMPT]
        )
        activities = "\n".join(
            f"- {a.activity_type}: {a.details} ({a.timestamp:%Y-%m-%d})"
            for a in crm_context.recent_activities[:RECENT_ACTIVITIES_IN_PROMPT]
        )
        tags = "\n".join(f"- {t}" for t in crm_context.tags)

        prompt += f"""

CURRENT CRM DATA SUMMARY:
- Total Contacts: {crm_context.total_contacts}
- Companies: {crm_context.companies_count}
- Tags: {crm_context.tags_count}

TOP COMPANIES (by contact count):
{top_companies}

RECENT CONTACTS:
{contacts}

RECENT ACTIVITIES:
{activities}

AVAILABLE TAGS:
{tags}"""

    if related_context:
        prompt += f"\n\nRELEVANT CONTEXT FOR THIS CONTACT:\n{related_context}"

    return f"{prompt}\n\n{CLOSING_INSTRUCTION}"
