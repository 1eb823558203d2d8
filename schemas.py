"""
Database Schemas

Contest platform records for MongoDB using Pydantic models.
Each Pydantic model represents a collection in the database.
Model name is converted to lowercase for the collection name.
Field aliases are the stored (and served) keys.
"""

from datetime import datetime
from typing import List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, model_validator

from database import now_utc


class Record(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, populate_by_name=True)


class Contest(Record):
    """
    Collection: "contest"
    A time-boxed meme contest with its fee settings and running winner
    """
    name: str = Field(..., min_length=1)
    start_date_time: datetime = Field(..., alias="startDateTime")
    end_date_time: datetime = Field(..., alias="endDateTime")
    entry_fee: float = Field(..., ge=0, alias="entryFee", description="Entry fee in token units")
    voting_fee: float = Field(..., ge=0, alias="votingFee", description="Voting fee in token units")
    winner_percentage: float = Field(..., ge=0, le=100, alias="winnerPercentage", description="Share of the pooled fees paid to the winner")
    number_of_lucky_voters: int = Field(..., ge=0, alias="numberOfLuckyVoters")
    contract_address: str = Field(..., min_length=1, alias="contractAddress", description="Contest smart contract")
    token_address: str = Field(..., min_length=1, alias="tokenAddress", description="Fee token contract")
    contest_owner: str = Field(..., min_length=1, alias="contestOwner", description="Owner wallet address")
    contest_ended: bool = Field(False, alias="contestEnded")
    distribution_tx: Optional[str] = Field(None, alias="distributionTX", description="Prize distribution tx hash")
    # insertion order is the submission index used by voters
    submissions: List[ObjectId] = Field(default_factory=list)
    voters: List[str] = Field(default_factory=list)
    winning_submission: Optional[ObjectId] = Field(None, alias="winningSubmission")
    highest_votes: int = Field(0, ge=0, alias="highestVotes")
    created_at: datetime = Field(default_factory=now_utc, alias="createdAt")
    updated_at: datetime = Field(default_factory=now_utc, alias="updatedAt")

    @model_validator(mode="after")
    def check_window(self):
        if (self.start_date_time.tzinfo is None) != (self.end_date_time.tzinfo is None):
            raise ValueError("startDateTime and endDateTime must both carry a timezone or neither")
        if self.end_date_time <= self.start_date_time:
            raise ValueError("endDateTime must be after startDateTime")
        return self


class Submission(Record):
    """
    Collection: "submission"
    A meme entered into a contest
    """
    wallet: str = Field("NA", description="Submitter wallet address")
    image: str = Field(..., min_length=1, description="IPFS hash of the pinned image")
    contest: ObjectId = Field(..., description="Owning contest")
    votes: int = Field(0, ge=0)
    linked: bool = Field(False, description="Whether the contest lists this submission yet")
    created_at: datetime = Field(default_factory=now_utc, alias="createdAt")


class Vote(Record):
    """
    Collection: "vote"
    Append-only ledger entry: one wallet endorsing one submission
    """
    contest: ObjectId
    submission: ObjectId
    voter: str = Field(..., min_length=1)
    vote_date: datetime = Field(default_factory=now_utc, alias="voteDate")
    tx_hash: str = Field("", alias="txHash", description="Unverified payment transaction hash")
