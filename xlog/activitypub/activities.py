"""
xlog/activitypub/activities.py

Atividades recebidas como tipos explícitos, em vez de dicts JSON-LD
com `type` comparado em string.

    Create | Follow | Accept | Like | Undo | Unknown

`object` pode chegar como URL ou como objeto embutido; em ambos os casos
`object_id` guarda o id. Para Undo, o objeto embutido é convertido
recursivamente em `inner`.
"""

from dataclasses import dataclass
from typing import ClassVar

from xlog.errors import MalformedActivity


@dataclass(frozen=True)
class Activity:
    id: str | None
    actor: str
    object_id: str | None
    raw: dict

    type: ClassVar[str] = ""


@dataclass(frozen=True)
class CreateActivity(Activity):
    type: ClassVar[str] = "Create"


@dataclass(frozen=True)
class FollowActivity(Activity):
    type: ClassVar[str] = "Follow"


@dataclass(frozen=True)
class AcceptActivity(Activity):
    type: ClassVar[str] = "Accept"


@dataclass(frozen=True)
class LikeActivity(Activity):
    type: ClassVar[str] = "Like"


@dataclass(frozen=True)
class UndoActivity(Activity):
    # None quando o objeto desfeito veio só como id
    inner: Activity | None = None

    type: ClassVar[str] = "Undo"


@dataclass(frozen=True)
class UnknownActivity(Activity):
    type_name: str = ""


VARIANTS: dict[str, type[Activity]] = {
    cls.type: cls
    for cls in (CreateActivity, FollowActivity, AcceptActivity, LikeActivity, UndoActivity)
}


def type_name(activity: Activity) -> str:
    if isinstance(activity, UnknownActivity):
        return activity.type_name
    return activity.type


def _ref(value) -> str | None:
    """Id de uma referência que pode ser URL ou objeto embutido."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("id"), str):
        return value["id"]
    return None


def parse_activity(data) -> Activity:
    if not isinstance(data, dict):
        raise MalformedActivity("atividade deve ser um objeto JSON")

    kind = data.get("type")
    if not isinstance(kind, str) or not kind:
        raise MalformedActivity("atividade sem `type`")

    activity_id = data.get("id") if isinstance(data.get("id"), str) else None
    actor = _ref(data.get("actor")) or ""
    raw_object = data.get("object")
    object_id = _ref(raw_object)

    cls = VARIANTS.get(kind)
    if cls is None:
        return UnknownActivity(activity_id, actor, object_id, data, type_name=kind)

    if cls is UndoActivity:
        inner = None
        if isinstance(raw_object, dict) and "type" in raw_object:
            try:
                inner = parse_activity(raw_object)
            except MalformedActivity:
                inner = None
        return UndoActivity(activity_id, actor, object_id, data, inner=inner)

    return cls(activity_id, actor, object_id, data)
