import pytest

from garson.core.errors import IntentNotFound, InvalidFeedback
from garson.services.order_intents import accuracy_for_tenant, list_intents, record_intent, serialize_intent, submit_feedback
from tests.fixtures_data import OTHER_TENANT_ID, TENANT_ID, make_session_factory


@pytest.fixture()
def db():
    Session = make_session_factory()
    session = Session()
    yield session
    session.close()


def _intent(db, tenant_id=TENANT_ID, text="2 tavuk döner"):
    intent = record_intent(db, tenant_id=tenant_id, conversation_id=None, raw_text=text, model="rules", confidence=0.9)
    db.commit()
    return intent


def test_first_feedback_wins(db):
    intent = _intent(db)

    assert submit_feedback(db, TENANT_ID, intent.id, "correct") == "correct"
    assert submit_feedback(db, TENANT_ID, intent.id, "incorrect") == "correct"
    assert submit_feedback(db, TENANT_ID, intent.id, "correct") == "correct"


def test_feedback_value_is_normalized(db):
    intent = _intent(db)

    assert submit_feedback(db, TENANT_ID, intent.id, "  INCORRECT ") == "incorrect"


def test_invalid_feedback_value_is_rejected(db):
    intent = _intent(db)

    with pytest.raises(InvalidFeedback):
        submit_feedback(db, TENANT_ID, intent.id, "maybe")


def test_feedback_for_other_tenant_intent_is_not_found(db):
    intent = _intent(db, tenant_id=OTHER_TENANT_ID)

    with pytest.raises(IntentNotFound):
        submit_feedback(db, TENANT_ID, intent.id, "correct")
    with pytest.raises(IntentNotFound):
        submit_feedback(db, TENANT_ID, 9999, "correct")


def test_accuracy_counts_only_reviewed_intents(db):
    first, second, third, _unreviewed = (_intent(db) for _ in range(4))
    submit_feedback(db, TENANT_ID, first.id, "correct")
    submit_feedback(db, TENANT_ID, second.id, "correct")
    submit_feedback(db, TENANT_ID, third.id, "incorrect")

    accuracy = accuracy_for_tenant(db, TENANT_ID)

    assert accuracy["correct"] == 2
    assert accuracy["incorrect"] == 1
    assert accuracy["total"] == 3
    assert accuracy["accuracy"] == pytest.approx(0.6667)


def test_accuracy_without_feedback_is_none(db):
    _intent(db)

    assert accuracy_for_tenant(db, TENANT_ID)["accuracy"] is None


def test_list_intents_is_newest_first_and_tenant_scoped(db):
    older = _intent(db, text="ayran")
    newer = _intent(db, text="kola")
    _intent(db, tenant_id=OTHER_TENANT_ID)

    listed = [serialize_intent(intent) for intent in list_intents(db, TENANT_ID)]

    assert [entry["id"] for entry in listed] == [newer.id, older.id]
    assert listed[0]["raw_text"] == "kola"
    assert listed[0]["feedback"] is None
