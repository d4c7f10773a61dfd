"""
Tests for services.matching.MatchingEngine: accept / reject side effects,
the cascade on accept, and lost races against decisions committed by
another session.

TestConcurrentAccepts needs row locks, so it only runs against Postgres:

    FOODBRIDGE_TEST_DATABASE_URL=postgresql+psycopg://localhost/foodbridge_test python -m pytest tests/test_matching.py
"""
import os
import threading
import time

import pytest
from sqlmodel import Session, SQLModel, select

from db import build_engine, create_db_and_tables
from errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from models import (
    Donation,
    DonationRequest,
    DonationStatus,
    Donor,
    Notification,
    NotificationType,
    RequestStatus,
)
from services import DonationStore, MatchingEngine, RequestStore
from services.matching import Action
from services.notifications import NotificationSink


@pytest.fixture
def market(session, make_donor, make_receiver, donation_fields):
    """One donor, one AVAILABLE donation, two receivers with PENDING requests."""
    donor = make_donor("Dana Donor")
    x = make_receiver("Receiver X")
    y = make_receiver("Receiver Y")
    donation = DonationStore(session).create(donor, donation_fields(title="Bread", quantity=5))
    requests = RequestStore(session)
    rx = requests.create(x, donation.id)
    ry = requests.create(y, donation.id)
    return {
        "donor": donor,
        "x": x,
        "y": y,
        "donation_id": donation.id,
        "donor_profile_id": donation.donor_id,
        "rx": rx.id,
        "ry": ry.id,
    }


def _notes(session, user_id, type):
    return session.exec(
        select(Notification).where(Notification.user_id == user_id, Notification.type == type)
    ).all()


class TestAccept:

    def test_accept_claims_and_rewards(self, session, market):
        engine = MatchingEngine(session)
        request = engine.respond(market["donor"], market["rx"], Action.ACCEPT)

        assert request.status == RequestStatus.ACCEPTED
        donation = session.get(Donation, market["donation_id"])
        assert donation.status == DonationStatus.CLAIMED
        assert donation.receiver_id == request.receiver_id
        assert session.get(Donor, market["donor_profile_id"]).points == 10

    def test_accept_cascades_rejection_without_notifying(self, session, market):
        MatchingEngine(session).respond(market["donor"], market["rx"], "ACCEPT")

        assert session.get(DonationRequest, market["ry"]).status == RequestStatus.REJECTED
        assert _notes(session, market["y"].id, NotificationType.REQUEST_REJECTED) == []

    def test_accept_notifies_the_receiver_once(self, session, market):
        MatchingEngine(session).respond(market["donor"], market["rx"], "ACCEPT")

        notes = _notes(session, market["x"].id, NotificationType.REQUEST_ACCEPTED)
        assert len(notes) == 1
        assert notes[0].title == "Donation Request Accepted"
        assert notes[0].message == "Dana Donor has accepted your request for: Bread"
        assert notes[0].request_id == market["rx"]

    def test_cascade_leaves_other_donations_alone(self, session, market, donation_fields):
        other = DonationStore(session).create(market["donor"], donation_fields(title="Rice"))
        elsewhere = RequestStore(session).create(market["y"], other.id)

        MatchingEngine(session).respond(market["donor"], market["rx"], "ACCEPT")
        assert session.get(DonationRequest, elsewhere.id).status == RequestStatus.PENDING

    def test_points_accumulate_across_donations(self, session, market, donation_fields):
        store = DonationStore(session)
        second = store.create(market["donor"], donation_fields(title="Soup"))
        request = RequestStore(session).create(market["y"], second.id)
        engine = MatchingEngine(session)

        engine.respond(market["donor"], market["rx"], "ACCEPT")
        engine.respond(market["donor"], request.id, "ACCEPT")
        assert session.get(Donor, market["donor_profile_id"]).points == 20


class TestReject:

    def test_reject_changes_only_the_request(self, session, market):
        request = MatchingEngine(session).respond(market["donor"], market["rx"], "REJECT")

        assert request.status == RequestStatus.REJECTED
        donation = session.get(Donation, market["donation_id"])
        assert donation.status == DonationStatus.AVAILABLE
        assert donation.receiver_id is None
        assert session.get(Donor, market["donor_profile_id"]).points == 0
        assert session.get(DonationRequest, market["ry"]).status == RequestStatus.PENDING

    def test_reject_notifies_the_receiver(self, session, market):
        MatchingEngine(session).respond(market["donor"], market["rx"], "REJECT")

        notes = _notes(session, market["x"].id, NotificationType.REQUEST_REJECTED)
        assert [n.message for n in notes] == [
            "Dana Donor has rejected your request for: Bread"
        ]

    def test_rejected_receiver_may_request_again(self, session, market):
        MatchingEngine(session).respond(market["donor"], market["rx"], "REJECT")
        again = RequestStore(session).create(market["x"], market["donation_id"])
        assert again.status == RequestStatus.PENDING


class TestPreconditions:

    def test_unknown_request(self, session, market):
        with pytest.raises(NotFoundError):
            MatchingEngine(session).respond(market["donor"], 9999, "ACCEPT")

    def test_only_the_owner_may_respond(self, session, market, make_donor):
        with pytest.raises(ForbiddenError):
            MatchingEngine(session).respond(make_donor("Someone Else"), market["rx"], "ACCEPT")
        assert session.get(DonationRequest, market["rx"]).status == RequestStatus.PENDING

    def test_receivers_cannot_respond(self, session, market):
        with pytest.raises(ForbiddenError):
            MatchingEngine(session).respond(market["x"], market["rx"], "ACCEPT")

    def test_invalid_action(self, session, market):
        with pytest.raises(ValidationError, match="Must be ACCEPT or REJECT"):
            MatchingEngine(session).respond(market["donor"], market["rx"], "MAYBE")

    @pytest.mark.parametrize("first", ["ACCEPT", "REJECT"])
    def test_second_decision_conflicts_and_mutates_nothing(self, session, market, first):
        engine = MatchingEngine(session)
        engine.respond(market["donor"], market["rx"], first)
        points = session.get(Donor, market["donor_profile_id"]).points
        notifications = len(session.exec(select(Notification)).all())

        resolved = "accepted" if first == "ACCEPT" else "rejected"
        with pytest.raises(ConflictError, match=f"already been {resolved}"):
            engine.respond(market["donor"], market["rx"], "ACCEPT")

        assert session.get(Donor, market["donor_profile_id"]).points == points
        assert len(session.exec(select(Notification)).all()) == notifications

    def test_cascade_rejected_request_cannot_be_accepted(self, session, market):
        engine = MatchingEngine(session)
        engine.respond(market["donor"], market["rx"], "ACCEPT")
        with pytest.raises(ConflictError, match="already been rejected"):
            engine.respond(market["donor"], market["ry"], "ACCEPT")

    def test_accept_on_cancelled_donation_rolls_back(self, session, market):
        DonationStore(session).cancel(market["donor"], market["donation_id"])

        with pytest.raises(ConflictError, match="already been cancelled"):
            MatchingEngine(session).respond(market["donor"], market["rx"], "ACCEPT")

        assert session.get(DonationRequest, market["rx"]).status == RequestStatus.PENDING
        assert session.get(Donor, market["donor_profile_id"]).points == 0
        assert _notes(session, market["x"].id, NotificationType.REQUEST_ACCEPTED) == []


class TestRaces:
    """Decisions prepared in one session while another session commits first."""

    def _stale(self, stale, market, request_key):
        request = stale.get(DonationRequest, market[request_key])
        donation = stale.get(Donation, market["donation_id"])
        donor = stale.get(Donor, market["donor_profile_id"])
        # both sessions have passed the PENDING check at this point
        assert request.status == RequestStatus.PENDING
        return request, donation, donor

    def test_only_one_of_two_accepts_wins(self, engine, market):
        with Session(engine) as stale:
            request, donation, donor = self._stale(stale, market, "rx")

            with Session(engine) as winner_session:
                MatchingEngine(winner_session).respond(market["donor"], market["ry"], "ACCEPT")

            with pytest.raises(ConflictError, match="already been claimed"):
                MatchingEngine(stale).apply_decision(request, donation, donor, Action.ACCEPT)

        with Session(engine) as check:
            donation = check.get(Donation, market["donation_id"])
            winner = check.get(DonationRequest, market["ry"])
            loser = check.get(DonationRequest, market["rx"])
            assert donation.status == DonationStatus.CLAIMED
            assert donation.receiver_id == winner.receiver_id
            assert winner.status == RequestStatus.ACCEPTED
            assert loser.status == RequestStatus.REJECTED
            assert check.get(Donor, market["donor_profile_id"]).points == 10
            accepted = check.exec(
                select(Notification).where(Notification.type == NotificationType.REQUEST_ACCEPTED)
            ).all()
            assert len(accepted) == 1

    def test_stale_accept_after_claim_by_other_path(self, engine, market):
        with Session(engine) as stale:
            request, donation, donor = self._stale(stale, market, "rx")

            # the donation is claimed while rx itself is still PENDING
            with Session(engine) as other:
                claimed = other.get(Donation, market["donation_id"])
                claimed.status = DonationStatus.CLAIMED
                claimed.receiver_id = other.get(DonationRequest, market["ry"]).receiver_id
                other.commit()

            with pytest.raises(ConflictError, match="already been claimed"):
                MatchingEngine(stale).apply_decision(request, donation, donor, Action.ACCEPT)

        with Session(engine) as check:
            assert check.get(DonationRequest, market["rx"]).status == RequestStatus.PENDING
            assert check.get(Donor, market["donor_profile_id"]).points == 0

    def test_stale_reject_after_withdrawal(self, engine, market):
        with Session(engine) as stale:
            request, donation, donor = self._stale(stale, market, "rx")

            with Session(engine) as other:
                RequestStore(other).withdraw(market["x"], market["donation_id"])

            with pytest.raises(NotFoundError):
                MatchingEngine(stale).apply_decision(request, donation, donor, Action.REJECT)


class TestConcurrentAccepts:
    """Two sessions accepting different requests on one donation at the same time."""

    @pytest.fixture
    def engine(self):
        url = os.environ.get("FOODBRIDGE_TEST_DATABASE_URL")
        if not url:
            pytest.skip("FOODBRIDGE_TEST_DATABASE_URL is not set")
        engine = build_engine(url, echo=False)
        SQLModel.metadata.drop_all(engine)
        create_db_and_tables(engine)
        yield engine
        SQLModel.metadata.drop_all(engine)
        engine.dispose()

    def test_exactly_one_accept_wins(self, engine, market, monkeypatch):
        barrier = threading.Barrier(2, timeout=10)
        outcomes = {}

        class Racing(MatchingEngine):
            def apply_decision(self, *args):
                # both callers are past every check in respond()
                barrier.wait()
                return super().apply_decision(*args)

        append = NotificationSink.append

        def slow_append(sink, *args, **kwargs):
            # hold the winner's locks long enough for the other side to queue
            time.sleep(0.2)
            return append(sink, *args, **kwargs)

        monkeypatch.setattr(NotificationSink, "append", slow_append)

        def accept(key):
            with Session(engine) as session:
                try:
                    Racing(session).respond(market["donor"], market[key], "ACCEPT")
                    outcomes[key] = "OK"
                except Exception as exc:
                    outcomes[key] = exc

        threads = [threading.Thread(target=accept, args=(key,)) for key in ("rx", "ry")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["rx", "ry"]
        winners = [key for key, outcome in outcomes.items() if outcome == "OK"]
        assert len(winners) == 1, outcomes
        (loser,) = {"rx", "ry"} - set(winners)
        assert isinstance(outcomes[loser], ConflictError), outcomes
        assert outcomes[loser].status_code == 409

        with Session(engine) as check:
            donation = check.get(Donation, market["donation_id"])
            winner = check.get(DonationRequest, market[winners[0]])
            assert donation.status == DonationStatus.CLAIMED
            assert donation.receiver_id == winner.receiver_id
            assert winner.status == RequestStatus.ACCEPTED
            assert check.get(DonationRequest, market[loser]).status == RequestStatus.REJECTED
            assert check.get(Donor, market["donor_profile_id"]).points == 10
            accepted = check.exec(
                select(Notification).where(Notification.type == NotificationType.REQUEST_ACCEPTED)
            ).all()
            assert len(accepted) == 1
