import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import CONTESTS, SUBMISSIONS, VOTES, Store, now_utc, parse_id
from errors import (
    BadRequest,
    ContestClosed,
    ContestNotFound,
    DistributionError,
    InvalidInput,
    MissingContentRef,
    SubmissionNotFound,
    UpstreamFailure,
)
from schemas import Contest, Submission
from services import normalize_address

log = logging.getLogger(__name__)


def _narrow(contest: Dict[str, Any], keep: Iterable) -> Dict[str, Any]:
    """Copy of contest whose submissions list only holds ids in keep, in contest order."""
    keep = set(keep)
    narrowed = dict(contest)
    narrowed["submissions"] = [s for s in contest.get("submissions") or [] if s in keep]
    return narrowed


class ContestService:
    """Contest administration, submission intake and the read side."""

    def __init__(self, store: Store, intake_retries: int = 3):
        self.store = store
        self.intake_retries = max(1, intake_retries)

    # ---------- Administration ----------
    def create_contest(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        try:
            contest = Contest.model_validate(fields)
        except ValidationError as e:
            raise InvalidInput(_first_error(e)) from None
        # a new contest always starts open and empty
        contest = contest.model_copy(update={
            "contest_ended": False,
            "submissions": [],
            "voters": [],
            "winning_submission": None,
            "highest_votes": 0,
            "distribution_tx": None,
        })
        doc = self.store.create_document(CONTESTS, contest)
        log.info("contest created: %s (%s) owner=%s", doc["_id"], doc["name"], doc["contestOwner"])
        return doc

    def end_contest(self, contest_id: str) -> Dict[str, Any]:
        doc = self.store.update_document(CONTESTS, contest_id, {"contestEnded": True})
        log.info("contest ended: %s", doc["_id"])
        return doc

    def transfer_owner(self, contest_id: str, new_owner: Optional[str]) -> Dict[str, Any]:
        cid = parse_id(contest_id, "contest id")
        if not new_owner or not new_owner.strip():
            raise BadRequest("New owner address is required")
        doc = self.store.update_document(CONTESTS, cid, {"contestOwner": new_owner.strip()})
        log.info("contest %s owner -> %s", cid, doc["contestOwner"])
        return doc

    def record_distribution(self, contest_id: str, tx_hash: Optional[str]) -> Dict[str, Any]:
        cid = parse_id(contest_id, "contest id")
        if not tx_hash or not tx_hash.strip():
            raise BadRequest("distributionTX is required")
        doc = self.store[CONTESTS].find_one_and_update(
            {"_id": cid, "contestEnded": True, "distributionTX": None},
            {"$set": {"distributionTX": tx_hash.strip(), "updatedAt": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            log.info("contest %s prizes distributed in %s", cid, tx_hash)
            return doc
        current = self.store.get_document(CONTESTS, cid)
        if not current.get("contestEnded"):
            raise DistributionError("Contest has not ended")
        raise DistributionError("Distribution already recorded")

    # ---------- Submission intake ----------
    def submit(self, contest_id: Optional[str], wallet: Optional[str], image: Optional[str]) -> Dict[str, Any]:
        if not image or not image.strip():
            raise MissingContentRef("No IPFS hash provided")
        if not contest_id:
            raise ContestNotFound("Contest not found")
        cid = parse_id(contest_id, "contest id")
        contest = self.store.get_document(CONTESTS, cid)
        if contest.get("contestEnded"):
            raise ContestClosed("Contest has ended")

        submission = self.store.create_document(
            SUBMISSIONS, Submission(contest=cid, wallet=normalize_address(wallet or "NA"), image=image.strip())
        )
        return self._link(submission)

    def _link(self, submission: Dict[str, Any]) -> Dict[str, Any]:
        """Append the submission to its contest and mark it linked."""
        sid, cid = submission["_id"], submission["contest"]
        last_error = None
        for attempt in range(1, self.intake_retries + 1):
            try:
                # $addToSet keeps retries from listing the submission twice.
                # An ended contest only matches when it already lists sid.
                res = self.store[CONTESTS].update_one(
                    {"_id": cid, "$or": [{"contestEnded": {"$ne": True}}, {"submissions": sid}]},
                    {"$addToSet": {"submissions": sid}, "$set": {"updatedAt": now_utc()}},
                )
                if res.matched_count == 0:
                    self._drop(sid, cid)
                self.store[SUBMISSIONS].update_one({"_id": sid}, {"$set": {"linked": True}})
                submission["linked"] = True
                log.info("submission %s added to contest %s", sid, cid)
                return submission
            except PyMongoError as e:
                last_error = e
                log.warning("linking submission %s to contest %s failed (attempt %d/%d): %s",
                            sid, cid, attempt, self.intake_retries, e)
        log.error("submission %s left unlinked, run reconcile to repair: %s", sid, last_error)
        raise UpstreamFailure("Error submitting to contest")

    def _drop(self, sid, cid) -> None:
        """Delete a submission its contest can no longer take, then say why."""
        self.store.delete_document(SUBMISSIONS, sid)
        if self.store.find_document(CONTESTS, cid) is None:
            raise ContestNotFound("Contest not found")
        raise ContestClosed("Contest has ended")

    def reconcile_orphans(self) -> int:
        """Link every submission still marked unlinked, dropping those whose contest is gone or ended."""
        repaired = 0
        for submission in self.store.get_documents(SUBMISSIONS, {"linked": False}):
            try:
                self._link(submission)
                repaired += 1
            except (ContestNotFound, ContestClosed) as e:
                log.warning("dropped orphan submission %s of contest %s: %s",
                            submission["_id"], submission["contest"], e.detail)
        return repaired

    # ---------- Queries ----------
    def list_contests(self) -> List[Dict[str, Any]]:
        return self.store.get_documents(CONTESTS)

    def get_contest(self, contest_id: str) -> Dict[str, Any]:
        return self.store.populate(self.store.get_document(CONTESTS, contest_id))

    def get_submissions(self, submission_ids: List[str]) -> List[Dict[str, Any]]:
        ids = [parse_id(s.strip(), "submission id") for s in submission_ids if s.strip()]
        if not ids:
            raise BadRequest("No submission IDs provided")
        found = self.store.find_by_ids(SUBMISSIONS, ids)
        if not found:
            raise SubmissionNotFound("Submissions not found")
        return [found[i] for i in dict.fromkeys(ids) if i in found]

    def get_contest_by_submission(self, submission_id: str) -> Dict[str, Any]:
        submission = self.store.get_document(SUBMISSIONS, submission_id)
        contest = self.store.get_document(CONTESTS, submission["contest"])
        narrowed = dict(contest)
        narrowed["submissions"] = [submission["_id"]]
        return narrowed

    def contests_submitted_by_wallet(self, wallet: str) -> List[Dict[str, Any]]:
        owned = self.store.get_documents(SUBMISSIONS, {"wallet": normalize_address(wallet)})
        by_contest: Dict[Any, set] = {}
        for s in owned:
            by_contest.setdefault(s["contest"], set()).add(s["_id"])
        return self._narrowed_contests(by_contest)

    def contests_voted_by_wallet(self, wallet: str) -> List[Dict[str, Any]]:
        votes = self.store.get_documents(VOTES, {"voter": normalize_address(wallet)})
        by_contest: Dict[Any, set] = {}
        for v in votes:
            by_contest.setdefault(v["contest"], set()).add(v["submission"])
        return self._narrowed_contests(by_contest)

    def _narrowed_contests(self, by_contest: Dict[Any, set]) -> List[Dict[str, Any]]:
        if not by_contest:
            return []
        contests = self.store.get_documents(CONTESTS, {"_id": {"$in": list(by_contest)}})
        result = []
        for c in contests:
            narrowed = _narrow(c, by_contest[c["_id"]])
            if narrowed["submissions"]:
                result.append(narrowed)
        return result


def _first_error(e: ValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()))
    return f"{loc}: {err.get('msg')}" if loc else err.get("msg", "Invalid input")
