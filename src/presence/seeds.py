"""Built-in templates used when a tenant is provisioned without custom input."""

from __future__ import annotations

from .provisioning import (
    ActivityStatusTemplate,
    ChannelTemplate,
    GlobalStatusTemplate,
    PonderTemplate,
    ProvisioningTemplates,
    SignalTemplate,
    StatusTemplate,
)

SIP_SERVICE = "sip_service"
CALL_MODEL = "connection"


def channel_seed() -> tuple[ChannelTemplate, ...]:
    return (
        ChannelTemplate(name="telephone", label="Telephone"),
        ChannelTemplate(name="video-chat", label="Video chat"),
        ChannelTemplate(name="asseco-chat", label="Chat"),
        ChannelTemplate(name="email", label="E-mail"),
        ChannelTemplate(name="sms", label="SMS"),
    )


def system_status_seed() -> tuple[StatusTemplate, ...]:
    """Statuses for realtime channels, where calls can be missed or time out."""

    available = StatusTemplate(
        name="available",
        label="Available",
        system=True,
        starting_status=True,
        default_unblocked=True,
    )
    offline = StatusTemplate(name="offline", label="Offline", blocked=True, system=True)
    busy = StatusTemplate(name="busy", label="Busy", blocked=True, system=True)
    after_call_work = StatusTemplate(
        name="after-call-work",
        label="After call work",
        blocked=True,
        system=True,
        default_blocked=True,
        timer=60,
        timer_transition=available,
    )
    missed = StatusTemplate(
        name="missed",
        label="Missed",
        reason="call rejected",
        blocked=True,
        system=True,
        on_reject=True,
        timer=30,
        timer_transition=available,
    )
    no_answer = StatusTemplate(
        name="no-answer",
        label="No answer",
        reason="call not answered",
        blocked=True,
        system=True,
        on_timeout=True,
        timer=30,
        timer_transition=available,
    )
    on_break = StatusTemplate(
        name="break",
        label="Break",
        blocked=True,
        transitions=(available, offline),
    )
    return (
        available,
        busy,
        after_call_work,
        missed,
        no_answer,
        on_break,
        offline,
        StatusTemplate(
            name="available",
            label="Available",
            system=True,
            starting_status=True,
            default_unblocked=True,
            transitions=(on_break, offline),
        ),
    )


def basic_status_seed() -> tuple[StatusTemplate, ...]:
    available = StatusTemplate(
        name="available",
        label="Available",
        system=True,
        starting_status=True,
        default_unblocked=True,
    )
    offline = StatusTemplate(name="offline", label="Offline", blocked=True, system=True)
    busy = StatusTemplate(
        name="busy",
        label="Busy",
        blocked=True,
        default_blocked=True,
        transitions=(available,),
    )
    on_break = StatusTemplate(name="break", label="Break", blocked=True, transitions=(available, offline))
    return (
        available,
        busy,
        on_break,
        offline,
        StatusTemplate(
            name="available",
            label="Available",
            system=True,
            starting_status=True,
            default_unblocked=True,
            transitions=(busy, on_break, offline),
        ),
    )


def global_status_seed() -> tuple[GlobalStatusTemplate, ...]:
    offline = GlobalStatusTemplate(name="offline", label="Offline", blocked=True, system=True)
    away = GlobalStatusTemplate(name="away", label="Away", blocked=True, timer=900, timer_transition=offline)
    online = GlobalStatusTemplate(
        name="online",
        label="Online",
        system=True,
        starting_status=True,
        transitions=(away, offline),
    )
    return (online, away, offline)


def signal_seed() -> tuple[SignalTemplate, ...]:
    return (
        SignalTemplate(
            service=SIP_SERVICE, model_name=CALL_MODEL, action="ringing", signal_name="call ringing", status_name="busy"
        ),
        SignalTemplate(
            service=SIP_SERVICE,
            model_name=CALL_MODEL,
            action="answered",
            signal_name="call answered",
            status_name="busy",
        ),
        SignalTemplate(
            service=SIP_SERVICE,
            model_name=CALL_MODEL,
            action="hangup",
            signal_name="call hung up",
            status_name="after-call-work",
        ),
        SignalTemplate(
            service=SIP_SERVICE,
            model_name=CALL_MODEL,
            action="failed",
            signal_name="call failed",
            status_name="missed",
        ),
        SignalTemplate(service=SIP_SERVICE, model_name="extension", action="un-registered", signal_name="offline"),
    )


def activity_status_seed() -> tuple[ActivityStatusTemplate, ...]:
    return (
        ActivityStatusTemplate(name="queued", label="Queued", description="Waiting for an agent"),
        ActivityStatusTemplate(name="in-progress", label="In progress", description="Handled by an agent"),
        ActivityStatusTemplate(name="on-hold", label="On hold"),
        ActivityStatusTemplate(name="completed", label="Completed", description="Closed by the agent"),
    )


def agent_ponders() -> tuple[PonderTemplate, ...]:
    return (
        PonderTemplate(object="agent", name="idle_time", label="Idle time", value=1.0),
        PonderTemplate(object="agent", name="utilization", label="Utilization", value=1.0),
        PonderTemplate(object="agent", name="skill_level", label="Skill level", value=0.5, enabled=False),
    )


def skill_group_ponders() -> tuple[PonderTemplate, ...]:
    return (PonderTemplate(object="skill_group", name="priority", label="Priority", value=1.0),)


def default_templates() -> ProvisioningTemplates:
    return ProvisioningTemplates(
        channels=channel_seed(),
        system_statuses=system_status_seed(),
        basic_statuses=basic_status_seed(),
        global_statuses=global_status_seed(),
        signals=signal_seed(),
        activity_statuses=activity_status_seed(),
        ponders=agent_ponders() + skill_group_ponders(),
    )


__all__ = [
    "activity_status_seed",
    "agent_ponders",
    "basic_status_seed",
    "channel_seed",
    "default_templates",
    "global_status_seed",
    "signal_seed",
    "skill_group_ponders",
    "system_status_seed",
]
