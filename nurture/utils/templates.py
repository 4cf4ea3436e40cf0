"""
Message templates for every sequence step.
Templates use {{variable}} substitution (first_name, last_name, email, phone,
company, calendar_link). Operational steps resolve to a fixed template key;
value steps rotate through CONTENT_POOLS without repeating until exhausted.
"""


def _cta(label: str) -> str:
    return (
        '<a href="{{calendar_link}}" style="display: inline-block; background: #0284c7; '
        'color: white; padding: 14px 28px; border-radius: 8px; text-decoration: none; '
        f'font-weight: 600; margin: 20px 0;">{label}</a>'
    )


_SIGNATURE = "Best regards,\nSTRUCTURE Team"

# === OPERATIONAL EMAILS (fixed per step) ===

OPERATIONAL_EMAILS = {
    "welcome_calendar": {
        "subject": "Next step: schedule your automation consultation",
        "body": (
            "Hi {{first_name}},\n\n"
            "Thanks for applying for automation with STRUCTURE.\n\n"
            "The next step is a 45-minute automation consultation with our team. "
            "It is a working session where we review how your operation runs today, "
            "find where manual processes slow you down, and assess whether automation "
            "makes sense at your current volume.\n\n"
            f"{_cta('Schedule your consultation here')}\n\n"
            "Please book only if you can attend the full 45 minutes.\n\n"
            f"{_SIGNATURE}"
        ),
    },
    "schedule_meeting_cta": {
        "subject": "Have you picked a time for your consultation?",
        "body": (
            "Hi {{first_name}},\n\n"
            "We noticed you haven't scheduled your automation consultation yet.\n\n"
            "The session is where we map your workflows and decide together whether "
            "automation is worth pursuing right now.\n\n"
            f"{_cta('Pick a time')}\n\n"
            f"{_SIGNATURE}"
        ),
    },
    "meeting_confirmation": {
        "subject": "Your automation consultation is scheduled",
        "body": (
            "Hi {{first_name}},\n\n"
            "Your 45-minute automation consultation with STRUCTURE is confirmed.\n\n"
            "<strong>Session overview</strong>\n"
            "Duration: 45 minutes\n"
            "Format: Live consultation\n"
            "Focus: your current workflows and where automation fits\n\n"
            "<strong>Please click \"yes\" in your calendar invite to confirm attendance.</strong>\n\n"
            "If you can't attend, reschedule in advance using the link in your invite.\n\n"
            f"{_SIGNATURE}"
        ),
    },
    "reminder_24h": {
        "subject": "Reminder: your automation consultation is tomorrow",
        "body": (
            "Hi {{first_name}},\n\n"
            "A reminder that your automation consultation with STRUCTURE is tomorrow.\n\n"
            "Please make sure you've accepted the calendar invite.\n\n"
            f"{_SIGNATURE}"
        ),
    },
    "reminder_6h": {
        "subject": "Your consultation is in 6 hours",
        "body": (
            "Hi {{first_name}},\n\n"
            "Your automation consultation is coming up in about 6 hours.\n\n"
            "See you soon.\n\n"
            f"{_SIGNATURE}"
        ),
    },
    "reminder_1h": {
        "subject": "Starting in 1 hour: automation consultation",
        "body": (
            "Hi {{first_name}},\n\n"
            "Your consultation starts in about 1 hour. Join using the link in your calendar invite.\n\n"
            f"{_SIGNATURE}"
        ),
    },
    "no_show_rebook": {
        "subject": "Missed automation consultation",
        "body": (
            "Hi {{first_name}},\n\n"
            "We had you scheduled for an automation consultation today, but you weren't able to attend.\n\n"
            "If automation is still a priority, you can reschedule once using the link below.\n\n"
            f"{_cta('Reschedule here')}\n\n"
            f"{_SIGNATURE}"
        ),
    },
}

# === WHATSAPP MESSAGES (fixed per step) ===

WHATSAPP_MESSAGES = {
    "welcome_calendar": (
        "Hey {{first_name}}, Haarith here from STRUCTURE.\n\n"
        "Thanks for applying for automation. My team has sent you an email with the "
        "next step to schedule your 45-minute consultation.\n\n"
        "Speak soon."
    ),
    "meeting_confirmation": (
        "Hi {{first_name}},\n\n"
        "Just confirming your automation consultation with STRUCTURE is booked. "
        "Please click Yes in the calendar invite so we know you're all set."
    ),
    "reminder_24h": (
        "Hi {{first_name}},\n\n"
        "Quick reminder: your automation consultation with STRUCTURE is tomorrow. See you then."
    ),
    "reminder_6h": (
        "Hi {{first_name}},\n\n"
        "Your STRUCTURE consultation is in about 6 hours. Looking forward to speaking with you."
    ),
    "reminder_1h": (
        "Hi {{first_name}},\n\n"
        "Your consultation starts in 1 hour. Please join via the link in your calendar."
    ),
    "no_show_rebook": (
        "Hi {{first_name}},\n\n"
        "You missed your automation consultation with STRUCTURE today. "
        "My team has emailed you a link to reschedule, this one time."
    ),
}

# === VALUE EMAILS (rotating pool) ===


def _value(content_id: str, subject: str, paragraphs: list[str], cta: str = "Book here") -> dict:
    body = "Hi {{first_name}},\n\n" + "\n\n".join(paragraphs)
    body += f"\n\nIf you want to walk through this for your business:\n\n{_cta(cta)}\n\n{_SIGNATURE}"
    return {"id": content_id, "subject": subject, "body": body}


VALUE_EMAILS = [
    _value("value_01", "Where automation should actually start", [
        "The usual mistake is trying to automate everything at once.",
        "Automation pays off first in high-frequency, repeatable tasks and in work that "
        "delays revenue, such as invoicing and documentation.",
    ]),
    _value("value_02", "Why hiring doesn't always solve the problem", [
        "Adding people to a manual process scales the cost along with the output.",
        "When the process itself is the bottleneck, more hands mostly mean more handoffs.",
    ]),
    _value("value_03", "Late invoicing is rarely a finance problem", [
        "Invoices go out late because the data they need arrives late.",
        "Fix the flow of shipment data and invoicing speeds up on its own.",
    ]),
    _value("value_04", "What makes customs workflows slow", [
        "Customs delays usually come from documents being checked and re-keyed by hand.",
        "Structured document intake removes most of that rework.",
    ]),
    _value("value_05", "The goal of automation is not technology", [
        "The goal is fewer errors, faster turnaround and a team that spends time on judgment calls.",
        "Tools are only the means.",
    ]),
    _value("value_06", "When effort stops producing results", [
        "There is a point where working harder stops moving the numbers.",
        "That point is usually a process limit, not a people limit.",
    ]),
    _value("value_07", "The hidden cost of poor visibility", [
        "Every status request your team answers by hand is time not spent on shipments.",
        "Visibility is one of the cheapest wins automation offers.",
    ]),
    _value("value_08", "Most errors are design problems", [
        "Repeated mistakes point to a process that makes them easy.",
        "Redesigning the step beats retraining the person.",
    ]),
    _value("value_09", "Why quoting speed affects win rates", [
        "The first credible quote often wins the business.",
        "Automated quoting turns hours into minutes.",
    ]),
    _value("value_10", "The real barrier to scaling", [
        "Growth exposes every manual step that used to be manageable.",
        "Scaling cleanly means removing those steps before volume arrives.",
    ]),
    _value("value_11", "Why document handling is still manual", [
        "Documents arrive in every format imaginable, so teams default to reading them by hand.",
        "Modern extraction handles that variety reliably.",
    ]),
    _value("value_12", "The cost of internal communication", [
        "Chasing colleagues for updates is invisible work that adds up fast.",
        "Shared, automatic status removes most of it.",
    ]),
    _value("value_13", "Why data quality matters more than data volume", [
        "Automation built on inconsistent data produces inconsistent results.",
        "Clean inputs come first.",
    ]),
    _value("value_14", "Exceptions are where automation breaks or shines", [
        "Any system handles the happy path.",
        "Good automation routes exceptions to people with full context attached.",
    ]),
    _value("value_15", "How to calculate automation ROI", [
        "Count hours saved, errors avoided and revenue pulled forward.",
        "Most teams only count the first and underestimate the return.",
    ]),
    _value("value_16", "Small improvements compound", [
        "Ten minutes saved per shipment becomes weeks saved per year.",
        "Start small and let it compound.",
    ]),
]

# === CLOSING EMAILS (end of sequence) ===

CLOSING_EMAILS = [
    _value("close_01", "Is automation relevant for you right now?", [
        "At this point either automation is relevant for your operation right now, or it is not.",
        "If it is not, there is nothing further to do.",
    ], cta="Book the session"),
    _value("close_02", "We do not continue outreach indefinitely", [
        "The consultation exists for teams that want to evaluate automation seriously.",
        "If that is not you right now, this will be our last email.",
    ], cta="Book the session"),
    _value("close_03", "Final message", [
        "This will be our final message.",
        "If automation becomes a priority, the consultation is the next step.",
    ], cta="Book the session"),
]

CONTENT_POOLS = {
    "value": VALUE_EMAILS,
    "closing": CLOSING_EMAILS,
}

# === DEFAULT SEQUENCE CATALOG ===
# new_lead / no_show delays run from enrollment; meeting_booked delays run
# from the meeting time (negative = before the meeting).

_NURTURE_CADENCE = [
    (1, "hours"), (4, "hours"), (6, "hours"), (12, "hours"),
    (36, "hours"), (48, "hours"),
    (3, "days"), (4, "days"), (5, "days"), (6, "days"), (7, "days"),
    (8, "days"), (9, "days"), (10, "days"), (11, "days"), (12, "days"),
    (13, "days"), (14, "days"), (15, "days"), (16, "days"), (17, "days"),
]


def _new_lead_steps() -> list[dict]:
    steps = [
        {"name": "Welcome + Calendar", "delay_value": 0, "delay_unit": "minutes",
         "channel": "both", "template_key": "welcome_calendar"},
    ]
    for i, (value, unit) in enumerate(_NURTURE_CADENCE[:4], start=1):
        steps.append({"name": f"Value Email #{i}", "delay_value": value, "delay_unit": unit,
                      "channel": "email", "content_pool": "value"})
    steps.append({"name": "Schedule Meeting CTA", "delay_value": 24, "delay_unit": "hours",
                  "channel": "email", "template_key": "schedule_meeting_cta"})
    for i, (value, unit) in enumerate(_NURTURE_CADENCE[4:], start=5):
        steps.append({"name": f"Value Email #{i}", "delay_value": value, "delay_unit": unit,
                      "channel": "email", "content_pool": "value"})
    steps.append({"name": "Final Value Email", "delay_value": 18, "delay_unit": "days",
                  "channel": "email", "content_pool": "closing"})
    return [dict(step, step_order=order) for order, step in enumerate(steps, start=1)]


def _no_show_steps() -> list[dict]:
    steps = [
        {"name": "Rebooking Request", "delay_value": 0, "delay_unit": "minutes",
         "channel": "both", "template_key": "no_show_rebook"},
    ]
    for i, (value, unit) in enumerate(_NURTURE_CADENCE[:8], start=1):
        steps.append({"name": f"Value Email #{i}", "delay_value": value, "delay_unit": unit,
                      "channel": "email", "content_pool": "value"})
    return [dict(step, step_order=order) for order, step in enumerate(steps, start=1)]


DEFAULT_SEQUENCES = [
    {
        "name": "New Lead Nurture",
        "slug": "new_lead",
        "description": "Automated follow-up sequence for new leads from ads",
        "trigger_type": "new_lead",
        "steps": _new_lead_steps(),
    },
    {
        "name": "Meeting Booked",
        "slug": "meeting_booked",
        "description": "Confirmation and reminder sequence for booked meetings",
        "trigger_type": "meeting_booked",
        "steps": [
            {"step_order": 1, "name": "Confirmation", "delay_value": 0, "delay_unit": "minutes",
             "channel": "both", "template_key": "meeting_confirmation"},
            {"step_order": 2, "name": "24hr Reminder", "delay_value": -24, "delay_unit": "hours",
             "channel": "both", "template_key": "reminder_24h"},
            {"step_order": 3, "name": "6hr Reminder", "delay_value": -6, "delay_unit": "hours",
             "channel": "both", "template_key": "reminder_6h"},
            {"step_order": 4, "name": "1hr Reminder", "delay_value": -1, "delay_unit": "hours",
             "channel": "both", "template_key": "reminder_1h"},
        ],
    },
    {
        "name": "No Show Follow-up",
        "slug": "no_show",
        "description": "Rebooking sequence for leads who missed their meeting",
        "trigger_type": "no_show",
        "steps": _no_show_steps(),
    },
    {
        "name": "Newsletter",
        "slug": "newsletter",
        "description": "Regular value content for converted leads",
        "trigger_type": "newsletter",
        "steps": [],
    },
]
