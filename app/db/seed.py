"""Reference catalog: the four learning tracks and their opening lessons.

Ids are uuid5-derived from the slug so the in-memory ledger and a seeded
database agree on them.  Lesson authoring happens outside this service;
only the first lesson of each track ships here.
"""

from __future__ import annotations

from uuid import NAMESPACE_URL, UUID, uuid5

from app.models.track import Lesson, Track

_NAMESPACE = uuid5(NAMESPACE_URL, "https://skillboost.co.ke/catalog")


def track_id(slug: str) -> UUID:
    return uuid5(_NAMESPACE, f"track:{slug}")


def lesson_id(slug: str, lesson_number: int) -> UUID:
    return uuid5(_NAMESPACE, f"lesson:{slug}:{lesson_number}")


TRACKS: tuple[Track, ...] = (
    Track(
        id=track_id("digital"),
        slug="digital",
        name="Digital Marketing",
        icon="📱",
        total_lessons=30,
        estimated_duration_weeks=6,
        description="Master social media marketing, content creation, and online advertising",
    ),
    Track(
        id=track_id("english"),
        slug="english",
        name="English Mastery",
        icon="🗣️",
        total_lessons=35,
        estimated_duration_weeks=7,
        description="Improve business English, pronunciation, and professional communication",
    ),
    Track(
        id=track_id("business"),
        slug="business",
        name="Entrepreneurship",
        icon="💼",
        total_lessons=25,
        estimated_duration_weeks=5,
        description="Learn business planning, customer service, and financial management",
    ),
    Track(
        id=track_id("vocational"),
        slug="vocational",
        name="Vocational Skills",
        icon="🔧",
        total_lessons=28,
        estimated_duration_weeks=6,
        description="Essential skills for trades, project management, and professional development",
    ),
)


def _lesson(slug: str, number: int, title: str, content: str, quiz: str, minutes: int) -> Lesson:
    return Lesson(
        id=lesson_id(slug, number),
        track_id=track_id(slug),
        lesson_number=number,
        title=title,
        content=content,
        estimated_reading_time_minutes=minutes,
        quiz_question=quiz,
    )


LESSONS: tuple[Lesson, ...] = (
    _lesson(
        "digital",
        1,
        "Creating Engaging Social Media Posts",
        "🎯 *Key Elements of Viral Content:*\n\n"
        "1. *Hook in First 3 Seconds*\n"
        "   • Start with a question or surprising fact\n"
        '   • Use numbers: "5 Ways to..." or "In 30 seconds..."\n\n'
        "2. *Visual Appeal*\n"
        "   • High-quality images or videos\n"
        "   • Consistent color scheme\n"
        "   • Clear, readable fonts\n\n"
        "3. *Value-First Approach*\n"
        "   • Solve a problem\n"
        "   • Teach something new\n"
        "   • Entertain or inspire\n\n"
        "4. *Call-to-Action*\n"
        '   • "Double-tap if you agree"\n'
        '   • "Share with someone who needs this"\n'
        '   • "Comment your experience below"\n\n'
        "*Today's Action:* Create one post using these principles!",
        "What should you include in the first 3 seconds of your content?",
        3,
    ),
    _lesson(
        "english",
        1,
        "Professional Email Writing",
        "📧 *Email Structure for Success:*\n\n"
        "1. *Subject Line* (Clear & Specific)\n"
        '   ❌ "Quick question"\n'
        '   ✅ "Meeting request for project discussion"\n\n'
        "2. *Greeting*\n"
        '   • Formal: "Dear Mr./Ms. [Name]"\n'
        '   • Semi-formal: "Hello [Name]"\n'
        '   • Casual: "Hi [Name]"\n\n'
        "3. *Opening Line*\n"
        "   • State your purpose immediately\n"
        "   • \"I'm writing to request...\"\n\n"
        "4. *Body* (Keep it brief)\n"
        "   • One main point per paragraph\n"
        "   • Use bullet points for lists\n\n"
        "5. *Closing*\n"
        '   • "Thank you for your time"\n'
        '   • "Best regards, [Your name]"\n\n'
        "*Practice:* Write one professional email today!",
        "What makes a good email subject line?",
        4,
    ),
    _lesson(
        "business",
        1,
        "Customer Service Excellence",
        "🌟 *The HEART Method:*\n\n"
        "*H - Hear* the customer\n"
        "• Listen actively without interrupting\n\n"
        "*E - Empathize* genuinely\n"
        '• "I understand how frustrating this must be"\n\n'
        "*A - Act* quickly\n"
        "• Offer immediate solutions\n\n"
        "*R - Respond* professionally\n"
        "• Stay calm and positive\n\n"
        "*T - Thank* them\n"
        "• Thank them for their business\n\n"
        "*Remember:* A satisfied customer tells 3 people, but an unsatisfied "
        "customer tells 10!",
        "What does the 'H' in the HEART method stand for?",
        3,
    ),
    _lesson(
        "vocational",
        1,
        "Basic Project Planning",
        "📋 *5-Step Project Planning:*\n\n"
        "*Step 1: Define the Goal*\n"
        "• What does success look like?\n\n"
        "*Step 2: List All Tasks*\n"
        "• Break the project into smaller tasks\n\n"
        "*Step 3: Estimate Time*\n"
        "• Add 20% buffer for unexpected delays\n\n"
        "*Step 4: Allocate Resources*\n"
        "• Materials, people, tools\n\n"
        "*Step 5: Create Timeline*\n"
        "• Work backwards from deadline\n\n"
        "*Tool Tip:* Use your phone's notes app to track tasks and deadlines!",
        "Why should you add a 20% time buffer to your estimates?",
        4,
    ),
)
