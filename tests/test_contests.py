import pytest
from bson import ObjectId

from contests import ContestService
from database import CONTESTS, SUBMISSIONS
from errors import (
    BadRequest,
    ContestClosed,
    ContestNotFound,
    DistributionError,
    InvalidId,
    InvalidInput,
    MissingContentRef,
    NotFound,
    SubmissionNotFound,
    UpstreamFailure,
)
from tests.fixtures import END, START, FlakyStore, contest_fields


class TestCreateContest:
    def test_new_contest_is_open_and_empty(self, ctx):
        contest = ctx.contests.create_contest(contest_fields())
        assert contest["contestEnded"] is False
        assert contest["submissions"] == []
        assert contest["voters"] == []
        assert contest["winningSubmission"] is None
        assert contest["highestVotes"] == 0
        assert isinstance(contest["_id"], ObjectId)

    def test_client_cannot_preset_ledger_fields(self, ctx):
        contest = ctx.contests.create_contest(
            contest_fields(contestEnded=True, voters=["0xA"], highestVotes=7, distributionTX="0xdist")
        )
        assert contest["contestEnded"] is False
        assert contest["voters"] == []
        assert contest["highestVotes"] == 0
        assert contest["distributionTX"] is None

    def test_zero_fees_are_allowed(self, ctx):
        contest = ctx.contests.create_contest(contest_fields(entryFee=0, votingFee=0, numberOfLuckyVoters=0))
        assert contest["entryFee"] == 0

    @pytest.mark.parametrize("overrides", [
        {"entryFee": -1},
        {"votingFee": -0.5},
        {"winnerPercentage": 101},
        {"numberOfLuckyVoters": -2},
        {"name": ""},
        {"contestOwner": ""},
        {"startDateTime": END, "endDateTime": START},
        {"endDateTime": START},
    ])
    def test_invalid_fields(self, ctx, overrides):
        with pytest.raises(InvalidInput):
            ctx.contests.create_contest(contest_fields(**overrides))

    def test_missing_required_field(self, ctx):
        fields = contest_fields()
        del fields["tokenAddress"]
        with pytest.raises(InvalidInput):
            ctx.contests.create_contest(fields)


class TestContestAdministration:
    def test_end_contest(self, ctx, contest):
        ended = ctx.contests.end_contest(str(contest["_id"]))
        assert ended["contestEnded"] is True
        # ending twice leaves it ended
        assert ctx.contests.end_contest(str(contest["_id"]))["contestEnded"] is True

    def test_end_unknown_contest(self, ctx):
        with pytest.raises(ContestNotFound):
            ctx.contests.end_contest(str(ObjectId()))

    def test_end_malformed_id(self, ctx):
        with pytest.raises(InvalidId):
            ctx.contests.end_contest("1234")

    def test_transfer_owner(self, ctx, contest):
        updated = ctx.contests.transfer_owner(str(contest["_id"]), "0xNewOwner")
        assert updated["contestOwner"] == "0xNewOwner"

    def test_transfer_owner_requires_address(self, ctx, contest):
        with pytest.raises(BadRequest):
            ctx.contests.transfer_owner(str(contest["_id"]), " ")

    def test_transfer_owner_bad_id_wins_over_missing_owner(self, ctx):
        with pytest.raises(InvalidId):
            ctx.contests.transfer_owner("zzz", None)

    def test_distribution_needs_ended_contest(self, ctx, contest):
        with pytest.raises(DistributionError):
            ctx.contests.record_distribution(str(contest["_id"]), "0xdist")

    def test_distribution_recorded_once(self, ctx, contest):
        cid = str(contest["_id"])
        ctx.contests.end_contest(cid)
        assert ctx.contests.record_distribution(cid, "0xdist")["distributionTX"] == "0xdist"
        with pytest.raises(DistributionError):
            ctx.contests.record_distribution(cid, "0xother")
        assert ctx.store.get_document(CONTESTS, cid)["distributionTX"] == "0xdist"

    def test_distribution_unknown_contest(self, ctx):
        with pytest.raises(ContestNotFound):
            ctx.contests.record_distribution(str(ObjectId()), "0xdist")


class TestSubmit:
    def test_submission_is_appended(self, ctx, contest):
        cid = str(contest["_id"])
        before = len(ctx.contests.get_contest(cid)["submissions"])
        submission = ctx.contests.submit(cid, "0xW", "ipfsHash1")

        populated = ctx.contests.get_contest(cid)
        assert len(populated["submissions"]) == before + 1
        assert populated["submissions"][-1]["image"] == "ipfsHash1"
        assert populated["submissions"][-1]["_id"] == submission["_id"]
        assert submission["votes"] == 0
        assert submission["linked"] is True

    def test_insertion_order_is_index(self, ctx, contest):
        cid = str(contest["_id"])
        ids = [ctx.contests.submit(cid, "0xW", f"Qm{i}")["_id"] for i in range(4)]
        assert ctx.store.get_document(CONTESTS, cid)["submissions"] == ids

    def test_wallet_defaults_to_na(self, ctx, contest):
        submission = ctx.contests.submit(str(contest["_id"]), None, "QmHash")
        assert submission["wallet"] == "NA"

    @pytest.mark.parametrize("image", [None, "", "   "])
    def test_missing_image(self, ctx, contest, image):
        with pytest.raises(MissingContentRef):
            ctx.contests.submit(str(contest["_id"]), "0xW", image)

    def test_unknown_contest(self, ctx):
        with pytest.raises(ContestNotFound):
            ctx.contests.submit(str(ObjectId()), "0xW", "QmHash")
        assert ctx.store[SUBMISSIONS].count_documents({}) == 0

    def test_malformed_contest(self, ctx):
        with pytest.raises(InvalidId):
            ctx.contests.submit("nope", "0xW", "QmHash")

    def test_ended_contest_rejects_submissions(self, ctx, contest):
        ctx.contests.end_contest(str(contest["_id"]))
        with pytest.raises(ContestClosed):
            ctx.contests.submit(str(contest["_id"]), "0xW", "QmHash")


class TestOrphanRepair:
    def test_link_failure_leaves_detectable_orphan(self, ctx, contest):
        flaky = ContestService(FlakyStore(ctx.store.db, CONTESTS, "update_one"), intake_retries=2)
        with pytest.raises(UpstreamFailure):
            flaky.submit(str(contest["_id"]), "0xW", "QmLost")

        orphan = ctx.store[SUBMISSIONS].find_one({"image": "QmLost"})
        assert orphan["linked"] is False
        assert ctx.store.get_document(CONTESTS, contest["_id"])["submissions"] == []

        assert ctx.contests.reconcile_orphans() == 1
        assert ctx.store.get_document(CONTESTS, contest["_id"])["submissions"] == [orphan["_id"]]
        assert ctx.store.get_document(SUBMISSIONS, orphan["_id"])["linked"] is True
        assert ctx.contests.reconcile_orphans() == 0

    def test_orphan_of_deleted_contest_is_dropped(self, ctx, contest):
        flaky = ContestService(FlakyStore(ctx.store.db, CONTESTS, "update_one"), intake_retries=1)
        with pytest.raises(UpstreamFailure):
            flaky.submit(str(contest["_id"]), "0xW", "QmLost")
        ctx.store[CONTESTS].delete_one({"_id": contest["_id"]})

        assert ctx.contests.reconcile_orphans() == 0
        assert ctx.store[SUBMISSIONS].count_documents({}) == 0


    def test_orphan_of_ended_contest_is_dropped(self, ctx, contest):
        cid = str(contest["_id"])
        flaky = ContestService(FlakyStore(ctx.store.db, CONTESTS, "update_one"), intake_retries=1)
        with pytest.raises(UpstreamFailure):
            flaky.submit(cid, "0xW", "QmLate")
        ctx.contests.end_contest(cid)

        assert ctx.contests.reconcile_orphans() == 0
        assert ctx.store.get_document(CONTESTS, cid)["submissions"] == []
        assert ctx.store[SUBMISSIONS].count_documents({"image": "QmLate"}) == 0

    def test_listed_orphan_of_ended_contest_is_kept(self, ctx, contest):
        cid = str(contest["_id"])
        flaky = ContestService(FlakyStore(ctx.store.db, SUBMISSIONS, "update_one"), intake_retries=1)
        with pytest.raises(UpstreamFailure):
            flaky.submit(cid, "0xW", "QmListed")
        ctx.contests.end_contest(cid)
        orphan = ctx.store[SUBMISSIONS].find_one({"image": "QmListed"})

        assert ctx.contests.reconcile_orphans() == 1
        assert ctx.store.get_document(CONTESTS, cid)["submissions"] == [orphan["_id"]]
        assert ctx.store.get_document(SUBMISSIONS, orphan["_id"])["linked"] is True

    def test_contest_ending_during_intake(self, ctx, contest, monkeypatch):
        cid = str(contest["_id"])
        service = ContestService(ctx.store)
        real_get = ctx.store.get_document

        def get_then_end(collection, id_):
            doc = real_get(collection, id_)
            ctx.store[CONTESTS].update_one({"_id": doc["_id"]}, {"$set": {"contestEnded": True}})
            return doc

        monkeypatch.setattr(ctx.store, "get_document", get_then_end)
        with pytest.raises(ContestClosed):
            service.submit(cid, "0xW", "QmRace")
        monkeypatch.undo()

        assert ctx.store.get_document(CONTESTS, cid)["submissions"] == []
        assert ctx.store[SUBMISSIONS].count_documents({}) == 0


class TestQueries:
    def test_list_contests(self, ctx, contest):
        ctx.contests.create_contest(contest_fields(name="Second"))
        names = sorted(c["name"] for c in ctx.contests.list_contests())
        assert names == ["Dankest of the week", "Second"]

    def test_get_contest_populates_in_order(self, ctx, two_entries):
        contest, s0, s1 = two_entries
        populated = ctx.contests.get_contest(str(contest["_id"]))
        assert [s["_id"] for s in populated["submissions"]] == [s0["_id"], s1["_id"]]
        assert populated["submissions"][0]["image"] == "QmImageZero"

    def test_get_contest_missing(self, ctx):
        with pytest.raises(ContestNotFound):
            ctx.contests.get_contest(str(ObjectId()))

    def test_submitted_by_wallet(self, ctx, contest):
        other = ctx.contests.create_contest(contest_fields(name="Other"))
        cid, oid = str(contest["_id"]), str(other["_id"])
        mine = [ctx.contests.submit(cid, "0xMe", "Qm1")["_id"], ctx.contests.submit(cid, "0xMe", "Qm2")["_id"]]
        ctx.contests.submit(cid, "0xYou", "Qm3")
        ctx.contests.submit(oid, "0xYou", "Qm4")

        result = ctx.contests.contests_submitted_by_wallet("0xMe")
        assert [c["_id"] for c in result] == [contest["_id"]]
        assert result[0]["submissions"] == mine

    def test_submitted_by_wallet_only_returns_own_ids(self, ctx, contest):
        other = ctx.contests.create_contest(contest_fields(name="Other"))
        for c in (contest, other):
            ctx.contests.submit(str(c["_id"]), "0xMe", "QmMine")
            ctx.contests.submit(str(c["_id"]), "0xYou", "QmYours")

        result = ctx.contests.contests_submitted_by_wallet("0xMe")
        assert len(result) == 2
        for c in result:
            wallets = {ctx.store.get_document(SUBMISSIONS, s)["wallet"] for s in c["submissions"]}
            assert wallets == {"0xMe"}

    def test_submitted_by_unknown_wallet(self, ctx, two_entries):
        assert ctx.contests.contests_submitted_by_wallet("0xNobody") == []

    def test_wallet_lookups_ignore_case(self, ctx, two_entries):
        contest, s0, _ = two_entries
        wallet = "0x52908400098527886e0f7030069857d2e4169ee7"
        mine = ctx.contests.submit(str(contest["_id"]), wallet.upper().replace("0X", "0x"), "QmCase")
        ctx.ledger.record_vote(str(contest["_id"]), wallet, 0, "tx")

        submitted = ctx.contests.contests_submitted_by_wallet(wallet)
        assert [c["submissions"] for c in submitted] == [[mine["_id"]]]
        voted = ctx.contests.contests_voted_by_wallet(wallet.upper().replace("0X", "0x"))
        assert [c["submissions"] for c in voted] == [[s0["_id"]]]

    def test_voted_by_wallet(self, ctx, two_entries):
        contest, _, s1 = two_entries
        other = ctx.contests.create_contest(contest_fields(name="Other"))
        ctx.contests.submit(str(other["_id"]), "0xS2", "QmElsewhere")
        ctx.ledger.record_vote(str(contest["_id"]), "0xVoter", 1, "tx")
        ctx.ledger.record_vote(str(contest["_id"]), "0xSomeoneElse", 0, "tx")

        result = ctx.contests.contests_voted_by_wallet("0xVoter")
        assert [c["_id"] for c in result] == [contest["_id"]]
        assert result[0]["submissions"] == [s1["_id"]]

    def test_contest_by_submission(self, ctx, two_entries):
        contest, _, s1 = two_entries
        result = ctx.contests.get_contest_by_submission(str(s1["_id"]))
        assert result["_id"] == contest["_id"]
        assert result["submissions"] == [s1["_id"]]

    def test_contest_by_unknown_submission(self, ctx):
        with pytest.raises(SubmissionNotFound):
            ctx.contests.get_contest_by_submission(str(ObjectId()))

    def test_get_submissions(self, ctx, two_entries):
        _, s0, s1 = two_entries
        found = ctx.contests.get_submissions([str(s1["_id"]), str(s0["_id"]), str(ObjectId())])
        assert [s["_id"] for s in found] == [s1["_id"], s0["_id"]]

    def test_get_submissions_none_found(self, ctx):
        with pytest.raises(NotFound):
            ctx.contests.get_submissions([str(ObjectId())])

    def test_get_submissions_malformed(self, ctx):
        with pytest.raises(InvalidId):
            ctx.contests.get_submissions(["bad"])
