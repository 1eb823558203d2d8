import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

import requests
from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pymongo.errors import PyMongoError

from config import Settings
from context import AppContext
from database import serialize
from errors import ContestAppError, InvalidInput, TweetImageNotFound

settings = Settings.from_env()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("dankmymeme.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx = getattr(app.state, "context", None) or AppContext.from_settings(settings)
    app.state.context = ctx
    ctx.start()
    try:
        yield
    finally:
        ctx.close()
        app.state.context = None


app = FastAPI(title="Dank My Meme API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    log.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


# ---------- Errors ----------
@app.exception_handler(ContestAppError)
async def handle_app_error(request: Request, exc: ContestAppError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.code})


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "Missing required fields"
    if errors:
        loc = ".".join(str(p) for p in errors[0].get("loc", ()) if p != "body")
        detail = f"{loc}: {errors[0].get('msg')}" if loc else errors[0].get("msg", detail)
    return JSONResponse(status_code=400, content={"detail": detail, "error": InvalidInput.code})


@app.exception_handler(PyMongoError)
async def handle_store_error(request: Request, exc: PyMongoError):
    log.exception("database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error", "error": "UpstreamFailure"})


@app.exception_handler(requests.RequestException)
async def handle_upstream_error(request: Request, exc: requests.RequestException):
    log.exception("upstream call failed on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error", "error": "UpstreamFailure"})


@app.exception_handler(Exception)
async def handle_unexpected(request: Request, exc: Exception):
    log.exception("unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Server error", "error": "UpstreamFailure"})


# ---------- Models ----------
class Body(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CreateContestRequest(Body):
    name: str
    start_date_time: datetime = Field(..., alias="startDateTime")
    end_date_time: datetime = Field(..., alias="endDateTime")
    entry_fee: float = Field(..., alias="entryFee")
    voting_fee: float = Field(..., alias="votingFee")
    winner_percentage: float = Field(..., alias="winnerPercentage")
    number_of_lucky_voters: int = Field(..., alias="numberOfLuckyVoters")
    contract_address: str = Field(..., alias="contractAddress")
    token_address: str = Field(..., alias="tokenAddress")
    contest_owner: str = Field(..., alias="contestOwner")


class OwnerRequest(Body):
    new_owner: Optional[str] = Field(None, alias="newOwner")


class DistributionRequest(Body):
    distribution_tx: Optional[str] = Field(None, alias="distributionTX")


class SubmitRequest(Body):
    contest: Optional[str] = None
    user_address: Optional[str] = Field(None, alias="userAddress")
    ipfs_hash: Optional[str] = Field(None, alias="ipfsHash")


class VoteRequest(Body):
    contest_id: Optional[str] = Field(None, alias="contestId")
    voter: Optional[str] = None
    submission_index: Optional[int] = Field(None, alias="submissionIndex")
    submission_id: Optional[str] = Field(None, alias="submissionId")
    tx_hash: Optional[str] = Field(None, alias="txHash")


class TweetRequest(Body):
    access_token: str = Field(..., alias="accessToken")
    access_token_secret: str = Field(..., alias="accessTokenSecret")
    text: str = Field(..., min_length=1, max_length=280)
    media_ids: Optional[List[str]] = Field(None, alias="mediaIds")


# ---------- Helpers ----------
def get_context(request: Request) -> AppContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return ctx


# ---------- Routes ----------
@app.get("/")
def read_root():
    return {"message": "Dank My Meme Backend Running"}


@app.get("/test")
def test_database(ctx: AppContext = Depends(get_context)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": ctx.settings.database_name,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        response["collections"] = ctx.store.db.list_collection_names()[:10]
        response["database"] = "✅ Connected"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return response


@app.get("/api/contests")
def list_contests(ctx: AppContext = Depends(get_context)):
    return serialize(ctx.contests.list_contests())


@app.get("/api/contests/submissionsByWallet/{wallet_address}")
def contests_by_wallet(wallet_address: str, ctx: AppContext = Depends(get_context)):
    return serialize(ctx.contests.contests_submitted_by_wallet(wallet_address))


@app.get("/api/contests/votedContests/{wallet_address}")
def contests_by_vote(wallet_address: str, ctx: AppContext = Depends(get_context)):
    return serialize(ctx.contests.contests_voted_by_wallet(wallet_address))


@app.get("/api/contests/{contest_id}")
def get_contest(contest_id: str, ctx: AppContext = Depends(get_context)):
    return serialize(ctx.contests.get_contest(contest_id))


@app.post("/api/contests")
def create_contest(body: CreateContestRequest, ctx: AppContext = Depends(get_context)):
    contest = ctx.contests.create_contest(body.model_dump(by_alias=True))
    return serialize(contest)


@app.patch("/api/contests/{contest_id}/end")
def end_contest(contest_id: str, ctx: AppContext = Depends(get_context)):
    contest = ctx.contests.end_contest(contest_id)
    return {"message": "Contest ended successfully", "contest": serialize(contest)}


@app.patch("/api/contests/{contest_id}/owner")
def update_contest_owner(contest_id: str, body: OwnerRequest, ctx: AppContext = Depends(get_context)):
    contest = ctx.contests.transfer_owner(contest_id, body.new_owner)
    return {"message": "Contest owner updated successfully", "contest": serialize(contest)}


@app.patch("/api/contests/{contest_id}/distribution")
def record_distribution(contest_id: str, body: DistributionRequest, ctx: AppContext = Depends(get_context)):
    contest = ctx.contests.record_distribution(contest_id, body.distribution_tx)
    return {"message": "Distribution recorded", "contest": serialize(contest)}


@app.post("/api/submissions")
def create_submission(body: SubmitRequest, ctx: AppContext = Depends(get_context)):
    submission = ctx.contests.submit(body.contest, body.user_address, body.ipfs_hash)
    return serialize(submission)


@app.get("/api/submissions")
def get_submissions(submissionIds: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    if not submissionIds:
        raise InvalidInput("No submission IDs provided")
    return serialize(ctx.contests.get_submissions(submissionIds.split(",")))


@app.post("/api/submissions/reconcile")
def reconcile_submissions(ctx: AppContext = Depends(get_context)):
    return {"repaired": ctx.contests.reconcile_orphans()}


@app.get("/api/submissions/{submission_id}")
def get_submission_contest(submission_id: str, ctx: AppContext = Depends(get_context)):
    return serialize(ctx.contests.get_contest_by_submission(submission_id))


@app.post("/api/votes", status_code=201)
def record_vote(body: VoteRequest, ctx: AppContext = Depends(get_context)):
    vote = ctx.ledger.record_vote(
        body.contest_id,
        body.voter,
        submission_index=body.submission_index,
        tx_hash=body.tx_hash,
        submission_id=body.submission_id,
    )
    return {"message": "Vote recorded successfully", "vote": serialize(vote)}


@app.post("/api/pinFile")
def pin_file(file: Optional[UploadFile] = File(None), ctx: AppContext = Depends(get_context)):
    if file is None or not file.filename:
        raise InvalidInput("No file uploaded")
    return ctx.pinata.pin_file(file.file.read(), file.filename)


@app.get("/api/getEns")
def get_ens(account: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    if not account:
        raise InvalidInput("Account parameter is required")
    return {"ensName": ctx.chain.display_name(account)}


@app.get("/api/balance")
def get_balance(account: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    if not account:
        raise InvalidInput("Account parameter is required")
    return {"account": account, "balance": str(ctx.chain.get_balance(account))}


@app.get("/api/twitter/request_token")
def twitter_request_token(ctx: AppContext = Depends(get_context)):
    return {"authUrl": ctx.twitter.request_token()}


@app.get("/api/twitter/callback")
def twitter_callback(oauth_token: str, oauth_verifier: str, ctx: AppContext = Depends(get_context)):
    return ctx.twitter.access_token(oauth_token, oauth_verifier)


@app.post("/api/twitter/tweet")
def twitter_post(body: TweetRequest, ctx: AppContext = Depends(get_context)):
    return ctx.twitter.post_status(body.access_token, body.access_token_secret, body.text, body.media_ids)


@app.get("/api/twitter/tweets/{tweet_id}/image")
def twitter_image(
    tweet_id: str,
    x_access_token: str = Header(...),
    x_access_token_secret: str = Header(...),
    ctx: AppContext = Depends(get_context),
):
    url = ctx.twitter.get_image_url(tweet_id, x_access_token, x_access_token_secret)
    if url is None:
        raise TweetImageNotFound("Tweet has no image")
    return {"imageUrl": url}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.port)
