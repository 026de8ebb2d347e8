from __future__ import annotations

from sqlmodel import Session, SQLModel, create_engine, select

from app.domain.models import EventEnvelope, EventRecord
from app.infra.events import EventBus


def test_event_bus_publish_and_subscribe() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []
    everything: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type="standards.imported",
        organization_id=7,
        payload={"rows": 2, "created": 2, "failed": 0},
    )
    bus.subscribe("standards.imported", handler)
    bus.subscribe("*", lambda item: everything.append(item.event_type))

    with Session(engine) as session:
        bus.publish(event, session=session)
        session.commit()

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].organization_id == 7
    assert seen == [event.event_id]
    assert everything == ["standards.imported"]


def test_unsubscribed_handler_is_not_called() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)
    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_type)

    bus.subscribe("organization.created", handler)
    bus.unsubscribe("organization.created", handler)
    with Session(engine) as session:
        bus.publish_dict("organization.created", 1, {"code": "ACME"}, session=session)
        session.commit()

    assert seen == []
