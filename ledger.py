"""
Voting ledger

Records one vote per wallet per contest, bumps the submission tally and
keeps the contest's winner pointer (winningSubmission / highestVotes) in
step with it.

All mutations for one contest run under a per-contest lock. The store
updates are conditional as well, so two processes sharing a database still
cannot double count a voter or regress highestVotes:

* the voter is claimed on the contest document with a ``voters $ne`` filter
* the vote record has a unique (contest, voter) index
* the winner is replaced only by a filter on ``highestVotes $lt <new count>``
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import CONTESTS, SUBMISSIONS, VOTES, Store, now_utc, parse_id
from errors import (
    ContestClosed,
    ContestNotFound,
    DuplicateVote,
    InvalidInput,
    SubmissionNotFound,
    UpstreamFailure,
)
from schemas import Vote
from services import normalize_address

log = logging.getLogger(__name__)


class ContestLocks:
    """One lock per contest id, kept only while some caller holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of callers holding or waiting]
        self._locks: Dict[str, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, contest_id):
        key = str(contest_id)
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


def _missing(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class VotingLedger:
    def __init__(self, store: Store, locks: Optional[ContestLocks] = None):
        self.store = store
        self.locks = locks or ContestLocks()

    def record_vote(
        self,
        contest_id: Optional[str],
        voter: Optional[str],
        submission_index: Optional[int] = None,
        tx_hash: Optional[str] = None,
        submission_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Validate and apply a vote, returning the stored Vote record.

        The submission is addressed either by its position in the contest
        (``submission_index``, 0 allowed) or by its id. Checks run in this
        order and the first failure wins: missing input, unknown contest,
        wallet already voted, unknown submission, contest ended.
        """
        if _missing(contest_id) or _missing(voter) or _missing(tx_hash):
            raise InvalidInput("Invalid input data. Missing required fields.")
        if submission_index is None and _missing(submission_id):
            raise InvalidInput("Invalid input data. Missing required fields.")
        if submission_index is not None and (isinstance(submission_index, bool) or not isinstance(submission_index, int)):
            raise InvalidInput("submissionIndex must be an integer")

        cid = parse_id(contest_id, "contest id")
        voter = normalize_address(voter)
        # unknown ids never get a lock entry
        if self.store.find_document(CONTESTS, cid) is None:
            raise ContestNotFound("Contest not found")
        with self.locks.hold(cid):
            contest = self.store.find_document(CONTESTS, cid)
            if contest is None:
                raise ContestNotFound("Contest not found")
            if voter in (contest.get("voters") or []):
                raise DuplicateVote("Voter has already voted.")
            target = self._resolve_submission(contest, submission_index, submission_id)
            if contest.get("contestEnded"):
                raise ContestClosed("Contest has ended")
            return self._apply(cid, target, voter, tx_hash)

    def _resolve_submission(self, contest, submission_index, submission_id):
        refs = contest.get("submissions") or []
        if submission_index is not None:
            if submission_index < 0 or submission_index >= len(refs):
                raise SubmissionNotFound("Submission not found")
            sid = refs[submission_index]
        else:
            sid = parse_id(submission_id, "submission id")
            if sid not in refs:
                raise SubmissionNotFound("Submission not found")
        submission = self.store.find_document(SUBMISSIONS, sid)
        if submission is None:
            raise SubmissionNotFound("Submission not found")
        return submission

    def _apply(self, cid, submission, voter, tx_hash) -> Dict[str, Any]:
        contests = self.store[CONTESTS]
        claimed = contests.find_one_and_update(
            {"_id": cid, "voters": {"$ne": voter}, "contestEnded": {"$ne": True}},
            {"$push": {"voters": voter}, "$set": {"updatedAt": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            current = contests.find_one({"_id": cid}, {"voters": 1, "contestEnded": 1})
            if current is None:
                raise ContestNotFound("Contest not found")
            if voter in (current.get("voters") or []):
                raise DuplicateVote("Voter has already voted.")
            raise ContestClosed("Contest has ended")

        vote = None
        counted = False
        try:
            vote = self.store.create_document(
                VOTES, Vote(contest=cid, submission=submission["_id"], voter=voter, tx_hash=tx_hash)
            )
            updated = self.store[SUBMISSIONS].find_one_and_update(
                {"_id": submission["_id"]},
                {"$inc": {"votes": 1}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise SubmissionNotFound("Submission not found")
            counted = True
            self._promote(cid, updated["_id"], updated["votes"])
        except DuplicateKeyError:
            # an earlier vote record exists, so the claim on voters stands
            raise DuplicateVote("Voter has already voted.")
        except SubmissionNotFound:
            self._undo(cid, voter, vote, submission["_id"], counted)
            raise
        except PyMongoError:
            log.exception("vote by %s in contest %s failed, rolling back", voter, cid)
            self._undo(cid, voter, vote, submission["_id"], counted)
            raise UpstreamFailure("Error recording vote")

        log.info("vote recorded: contest=%s submission=%s voter=%s votes=%s",
                 cid, updated["_id"], voter, updated["votes"])
        return vote

    def _promote(self, cid, submission_id, votes: int) -> None:
        # ties keep the earlier leader
        self.store[CONTESTS].update_one(
            {
                "_id": cid,
                "$or": [
                    {"winningSubmission": None},
                    {"highestVotes": {"$lt": votes}},
                ],
            },
            {"$set": {"winningSubmission": submission_id, "highestVotes": votes}},
        )

    def _undo(self, cid, voter, vote, submission_id, counted) -> None:
        try:
            if counted:
                self.store[SUBMISSIONS].update_one({"_id": submission_id}, {"$inc": {"votes": -1}})
            if vote is not None:
                self.store.delete_document(VOTES, vote["_id"])
            self.store[CONTESTS].update_one({"_id": cid}, {"$pull": {"voters": voter}})
        except PyMongoError:
            log.exception("rollback of vote by %s in contest %s incomplete", voter, cid)
