"""WhatsApp message copy.

Plain functions returning text; WhatsApp renders *bold* and _italic_.
"""

from __future__ import annotations

import datetime

from app.models.track import Lesson, Track

BRAND = "SkillBoost Kenya"
SITE_URL = "https://skillboost.co.ke"
SUPPORT_NUMBER = "+254 700 123 456"

DEFAULT_QUIZ = "What's one key takeaway from today's lesson?"


def welcome(name: str, plan_title: str) -> str:
    return (
        f"🎉 Welcome to {BRAND}, {name}!\n\n"
        f"Your {plan_title} is now active and ready to go!\n\n"
        "Here's what happens next:\n"
        "📚 You'll receive your first lesson at your preferred time\n"
        "📈 Track your progress as you complete lessons\n"
        "🏆 Earn certificates as you complete tracks\n\n"
        "📖 *Quick Commands:*\n"
        '• Reply "HELP" for assistance\n'
        '• Reply "PAUSE" to pause lessons\n'
        '• Reply "RESUME" to resume lessons\n'
        '• Reply "PROGRESS" to see your stats\n\n'
        f"_From the {BRAND} Team_"
    )


def daily_lesson(lesson: Lesson, track_name: str, progress: int) -> str:
    return (
        f"📚 *Daily Lesson - {track_name}*\n\n"
        f"*{lesson.title}*\n\n"
        f"{lesson.content}\n\n"
        f"📊 *Your Progress:* {progress}% complete\n"
        f"⏱️ *Time:* ~{lesson.estimated_reading_time_minutes} minutes\n\n"
        f"*Quick Quiz:* {lesson.quiz_question or DEFAULT_QUIZ}\n\n"
        "Reply with your answer to earn points! 💪\n\n"
        "---\n"
        'Reply "NEXT" for tomorrow\'s preview\n'
        'Reply "HELP" for more options'
    )


def payment_confirmation(
    name: str,
    plan_title: str,
    amount: float | int | None,
    receipt_number: str | None,
    expires_at: datetime.datetime,
) -> str:
    amount_text = f"KES {amount:g}" if amount is not None else "your payment"
    return (
        "✅ *Payment Confirmed!*\n\n"
        f"Hi {name}! Your payment of {amount_text} has been received.\n\n"
        f"📱 *Transaction ID:* {receipt_number or 'pending'}\n"
        f"📅 *Subscription:* {plan_title}\n"
        f"⏰ *Valid until:* {expires_at:%d %b %Y}\n\n"
        f"Your daily lessons will continue as scheduled. Welcome to {BRAND}! 🎉\n\n"
        'Questions? Reply "HELP" for support.'
    )


def renewal_reminder(name: str, plan_title: str, amount: int) -> str:
    return (
        "💰 *Payment Reminder*\n\n"
        f"Hi {name}!\n\n"
        f"Your {plan_title} subscription will expire soon. "
        "To continue receiving daily lessons, please renew:\n\n"
        f"💵 Amount: KES {amount}\n"
        f"🌐 Renew at: {SITE_URL}\n\n"
        'Once paid, reply "PAID" and we\'ll verify immediately.\n\n'
        "Keep learning! 📚✨"
    )


def help_menu() -> str:
    return (
        f"🤖 *{BRAND} Help*\n\n"
        "📖 *Commands:*\n"
        "• PROGRESS - see your learning stats\n"
        "• NEXT - preview your next lesson\n"
        "• TRACKS - browse available courses\n"
        "• PAUSE - pause daily lessons\n"
        "• RESUME - resume daily lessons\n"
        "• PAID - confirm a payment you just made\n\n"
        f"Need a human? Contact support: {SUPPORT_NUMBER}"
    )


def paused() -> str:
    return (
        "⏸️ Lessons paused successfully!\n\n"
        'Your learning is now on hold. Reply "RESUME" anytime to continue '
        "your progress.\n\nTake your time - we'll be here when you're ready! 😊"
    )


def resumed(name: str, preferred_time: str) -> str:
    return (
        f"▶️ Welcome back, {name}!\n\n"
        f"Your lessons are now resumed. You'll receive your next lesson at "
        f"{preferred_time}.\n\nLet's continue building your skills! 💪"
    )


def subscription_expired(name: str) -> str:
    return (
        f"⌛ Hi {name}, your subscription has expired.\n\n"
        f"Renew at {SITE_URL} to keep receiving daily lessons."
    )


def progress_report(name: str, lines: list[tuple[Track, int]]) -> str:
    body = (
        "\n".join(f"📚 {track.name}: {pct}%" for track, pct in lines)
        or "No active tracks"
    )
    return (
        f"📊 *Your Learning Progress*\n\n{body}\n\n"
        f"🎯 Keep going, {name}! Every lesson brings you closer to your goals.\n\n"
        'Reply "TRACKS" to explore more courses!'
    )


def next_lesson_preview(previews: list[tuple[Track, Lesson | None]]) -> str:
    if not previews:
        return (
            "You're not enrolled in any track yet.\n\n"
            'Reply "TRACKS" to see what you can learn!'
        )
    lines = []
    for track, lesson in previews:
        if lesson is None:
            lines.append(f"🏁 {track.name}: all lessons completed!")
        else:
            lines.append(
                f"📘 {track.name}: Lesson {lesson.lesson_number} - {lesson.title} "
                f"(~{lesson.estimated_reading_time_minutes} min)"
            )
    return "🔮 *Coming up next*\n\n" + "\n".join(lines)


def track_catalog(tracks: list[Track]) -> str:
    body = (
        "\n".join(f"{t.icon} {t.name} - {t.total_lessons} lessons" for t in tracks)
        or "No tracks available"
    )
    return (
        f"📚 *Available Learning Tracks*\n\n{body}\n\n"
        f"To enroll in additional tracks, visit: {SITE_URL}\n\n"
        'Reply "PROGRESS" to see your current progress!'
    )


def payment_check() -> str:
    return (
        "💰 *Payment Verification*\n\n"
        "We're checking your payment now. This usually takes 1-2 minutes.\n\n"
        "Once verified, your subscription will be activated automatically!\n\n"
        f"If you continue to have issues, please contact support: {SUPPORT_NUMBER}"
    )


def fallback() -> str:
    return (
        "Thanks for your message! 👍\n\n"
        'For help with commands, reply "HELP"\n'
        'To see your progress, reply "PROGRESS"\n'
        'To view available courses, reply "TRACKS"'
    )


def onboarding() -> str:
    return (
        f"Welcome to {BRAND}! 🎉\n\n"
        f"To get started with your daily 5-minute lessons, visit: {SITE_URL}\n\n"
        "Sign up with this WhatsApp number and your first lesson will arrive "
        "at the time you choose."
    )
