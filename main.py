import os
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pymongo.errors import DuplicateKeyError, PyMongoError

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s:%(name)s:%(message)s",
)

import database
import repository
from auth import (
    AuthInfo,
    close_session,
    get_auth,
    hash_password,
    new_anonymous_id,
    open_session,
    verify_password,
)
from database import create_document, delete_documents, get_documents, increment, update_document
from errors import platform_call
from schemas import (
    AuthResponse,
    Group,
    GroupCreate,
    GroupDetail,
    JoinRequest,
    Like,
    LikeState,
    LoginRequest,
    Post,
    PostCreate,
    ProfileResponse,
    ProfileUpdate,
    RegisterRequest,
    Reply,
    ReplyCreate,
    ReplyCreated,
    Thread,
    ThreadCreate,
    ThreadDetail,
    User,
)
from streams import router as streams_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; store calls will fail")
    else:
        try:
            database.ensure_indexes()
        except PyMongoError as e:
            logger.error(f"Could not ensure indexes: {e}")
    yield
    if database.client is not None:
        database.client.close()


app = FastAPI(title="Book Club API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(streams_router)


@app.get("/")
def read_root():
    return {"message": "Book Club API is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if database.db is None:
        return response
    try:
        response["collections"] = database.db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# ----------------- Helpers -----------------

def _group_or_404(group_id: str) -> Group:
    group = repository.fetch_group(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    return group


def _member_group(group_id: str, auth: AuthInfo) -> Group:
    group = _group_or_404(group_id)
    if not group.has_member(auth.user_id):
        raise HTTPException(status_code=403, detail="Only group members can do that. Answer the moderation question to join.")
    return group


def _thread_or_404(group_id: str, thread_id: str) -> Thread:
    thread = repository.fetch_thread(group_id, thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail="Thread not found")
    return thread


def _group_detail(group: Group, auth: AuthInfo) -> GroupDetail:
    return GroupDetail.for_user(group, auth.user_id)


def _author_name(user_id: str) -> str:
    profile = repository.fetch_user(user_id)
    if profile is None or not profile.username.strip():
        return "Anonymous"
    return profile.username


# ----------------- Auth -----------------

@app.post("/api/auth/register", response_model=AuthResponse)
def register(req: RegisterRequest):
    email = req.email.lower()
    with platform_call("create account"):
        if get_documents("user", {"email": email}, 1):
            raise HTTPException(status_code=400, detail="Email already registered")
        if get_documents("user", {"username": req.username}, 1):
            raise HTTPException(status_code=400, detail="Username already taken")
        try:
            uid = create_document("user", {
                "username": req.username,
                "email": email,
                "display_name": req.username,
                "avatar_url": "",
                "group_ids": [],
                "password_hash": hash_password(req.password),
            })
        except DuplicateKeyError:
            raise HTTPException(status_code=400, detail="Username or email already registered")
        token = open_session(uid)
        profile = repository.fetch_user(uid)
    return AuthResponse(token=token, user_id=uid, profile=profile)


@app.post("/api/auth/login", response_model=AuthResponse)
def login(req: LoginRequest):
    with platform_call("sign in"):
        users = get_documents("user", {"email": req.email.lower()}, 1)
        if not users or not verify_password(req.password, users[0].get("password_hash")):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        uid = str(users[0]["_id"])
        token = open_session(uid)
        profile = repository.fetch_user(uid)
    return AuthResponse(token=token, user_id=uid, profile=profile)


@app.post("/api/auth/anonymous", response_model=AuthResponse)
def sign_in_anonymously():
    uid = new_anonymous_id()
    with platform_call("sign in anonymously"):
        token = open_session(uid, anonymous=True)
    return AuthResponse(token=token, user_id=uid, anonymous=True)


@app.post("/api/auth/logout")
def sign_out(auth: AuthInfo = Depends(get_auth("sign out"))):
    with platform_call("sign out"):
        close_session(auth.token)
    return {"signed_out": True}


@app.get("/api/auth/me")
def auth_state(auth: AuthInfo = Depends(get_auth())):
    return {"signed_in": auth.signed_in, "user_id": auth.user_id, "anonymous": auth.anonymous}


# ----------------- Profiles -----------------

@app.get("/api/users/me", response_model=ProfileResponse)
def my_profile(auth: AuthInfo = Depends(get_auth("view your profile"))):
    with platform_call("fetch my profile"):
        profile = repository.fetch_user(auth.user_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="My user document not found or data malformed.")
    return ProfileResponse(**dict(profile), is_own_profile=True)


@app.patch("/api/users/me", response_model=ProfileResponse)
def update_profile(changes: ProfileUpdate, auth: AuthInfo = Depends(get_auth("edit your profile"))):
    fields = changes.model_dump(exclude_none=True)
    if not fields:
        raise HTTPException(status_code=400, detail="Nothing to update")
    with platform_call("update profile"):
        doc = update_document("user", auth.user_id, {"$set": fields})
    profile = User.from_document(doc) if doc else None
    if profile is None:
        raise HTTPException(status_code=404, detail="My user document not found or data malformed.")
    return ProfileResponse(**dict(profile), is_own_profile=True)


@app.get("/api/users/{username}", response_model=ProfileResponse)
def profile_by_username(username: str, auth: AuthInfo = Depends(get_auth())):
    with platform_call("fetch profile"):
        profile = repository.fetch_user_by_username(username)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"User “{username}” not found or data malformed.")
    own = profile.id == auth.user_id
    # Email is only shown to its owner
    return ProfileResponse(**{**dict(profile), "email": profile.email if own else None}, is_own_profile=own)


# ----------------- Posts -----------------

@app.get("/api/posts", response_model=List[Post])
def list_posts(limit: int = 50):
    with platform_call("fetch posts"):
        return repository.fetch_posts(limit)


@app.post("/api/posts", response_model=Post)
def create_post(req: PostCreate, auth: AuthInfo = Depends(get_auth("create a post"))):
    with platform_call("create post"):
        author = req.author or _author_name(auth.user_id)
        pid = create_document("post", {
            "author": author,
            "author_id": auth.user_id,
            "title": req.title,
            "body": req.body,
        })
        post = repository.fetch_post(pid)
    logger.info(f"Post {pid} created by {auth.user_id}")
    return post


@app.get("/api/posts/{post_id}", response_model=Post)
def get_post(post_id: str):
    with platform_call("fetch post"):
        post = repository.fetch_post(post_id)
    if post is None:
        raise HTTPException(status_code=404, detail="Post not found")
    return post


# ----------------- Groups -----------------

@app.get("/api/groups", response_model=List[Group])
def list_groups(limit: int = 50):
    with platform_call("fetch groups"):
        return repository.fetch_groups(limit)


@app.post("/api/groups", response_model=GroupDetail)
def create_group(req: GroupCreate, auth: AuthInfo = Depends(get_auth("create a group"))):
    uid = auth.user_id
    with platform_call("create group"):
        gid = create_document("group", {
            **req.model_dump(),
            "owner_id": uid,
            "moderator_ids": [uid],
            "member_ids": [uid],
        })
        update_document("user", uid, {"$addToSet": {"group_ids": gid}})
        group = repository.fetch_group(gid)
    logger.info(f"Group {gid} created by {uid}")
    return _group_detail(group, auth)


@app.get("/api/groups/{group_id}", response_model=GroupDetail)
def get_group(group_id: str, auth: AuthInfo = Depends(get_auth())):
    with platform_call("fetch group"):
        group = _group_or_404(group_id)
    return _group_detail(group, auth)


@app.post("/api/groups/{group_id}/join", response_model=GroupDetail)
def join_group(group_id: str, req: JoinRequest, auth: AuthInfo = Depends(get_auth("join a group"))):
    uid = auth.user_id
    with platform_call("join group"):
        group = _group_or_404(group_id)
        if group.has_member(uid):
            return _group_detail(group, auth)
        if not group.accepts_answer(req.answer):
            raise HTTPException(status_code=403, detail="Incorrect answer")
        doc = update_document("group", group.id, {"$addToSet": {"member_ids": uid}})
        update_document("user", uid, {"$addToSet": {"group_ids": group.id}})
    logger.info(f"{uid} joined group {group.id}")
    return _group_detail(Group.from_document(doc) or group, auth)


# ----------------- Threads -----------------

@app.get("/api/groups/{group_id}/threads", response_model=List[Thread])
def list_threads(group_id: str, limit: int = 100, auth: AuthInfo = Depends(get_auth("view threads"))):
    with platform_call("fetch threads"):
        group = _member_group(group_id, auth)
        return repository.fetch_threads(group.id, limit)


@app.post("/api/groups/{group_id}/threads", response_model=Thread)
def create_thread(group_id: str, req: ThreadCreate, auth: AuthInfo = Depends(get_auth("post"))):
    with platform_call("post"):
        group = _member_group(group_id, auth)
        if req.is_mod_tagged and not group.has_moderator(auth.user_id):
            raise HTTPException(status_code=403, detail="Only moderators can tag a thread")
        tid = create_document("thread", {
            "group_id": group.id,
            "author_id": auth.user_id,
            "username": _author_name(auth.user_id),
            "content": req.content,
            "like_count": 0,
            "reply_count": 0,
            "is_mod_tagged": req.is_mod_tagged,
        })
        thread = repository.fetch_thread(group.id, tid)
    return thread


@app.get("/api/groups/{group_id}/threads/{thread_id}", response_model=ThreadDetail)
def get_thread(group_id: str, thread_id: str, auth: AuthInfo = Depends(get_auth("view threads"))):
    with platform_call("fetch thread"):
        _member_group(group_id, auth)
        thread = _thread_or_404(group_id, thread_id)
        liked = repository.has_liked(thread.id, auth.user_id)
    return ThreadDetail(**dict(thread), liked_by_me=liked)


def _count_like(thread_id: str, amount: int, undo) -> dict:
    """Move like_count by `amount`; if that fails, undo the like document change so the two stay in step."""
    try:
        return increment("thread", thread_id, "like_count", amount)
    except PyMongoError:
        undo()
        raise


@app.post("/api/groups/{group_id}/threads/{thread_id}/like", response_model=LikeState)
def toggle_like(group_id: str, thread_id: str, auth: AuthInfo = Depends(get_auth("like a thread"))):
    uid = auth.user_id
    with platform_call("update like"):
        _member_group(group_id, auth)
        thread = _thread_or_404(group_id, thread_id)
        key = Like.key(thread.id, uid)
        like = {"thread_id": thread.id, "user_id": uid}
        if delete_documents("like", {"_id": key}):
            doc = _count_like(thread.id, -1, lambda: create_document("like", like, doc_id=key))
            liked = False
        else:
            try:
                create_document("like", like, doc_id=key)
            except DuplicateKeyError:
                # A concurrent request already counted this like
                doc = database.get_document("thread", thread.id)
            else:
                doc = _count_like(thread.id, 1, lambda: delete_documents("like", {"_id": key}))
            liked = True
    updated = Thread.from_document(doc)
    return LikeState(liked=liked, like_count=updated.like_count if updated else thread.like_count)


# ----------------- Replies -----------------

@app.get("/api/groups/{group_id}/threads/{thread_id}/replies", response_model=List[Reply])
def list_replies(group_id: str, thread_id: str, auth: AuthInfo = Depends(get_auth("view replies"))):
    with platform_call("load replies"):
        _member_group(group_id, auth)
        thread = _thread_or_404(group_id, thread_id)
        return repository.fetch_replies(thread.id)


@app.post("/api/groups/{group_id}/threads/{thread_id}/replies", response_model=ReplyCreated)
def create_reply(group_id: str, thread_id: str, req: ReplyCreate, auth: AuthInfo = Depends(get_auth("reply"))):
    uid = auth.user_id
    with platform_call("save reply"):
        _member_group(group_id, auth)
        thread = _thread_or_404(group_id, thread_id)
        profile = repository.fetch_user(uid)
        rid = create_document("reply", {
            "group_id": group_id,
            "thread_id": thread.id,
            "username": profile.username if profile and profile.username.strip() else "Anonymous",
            "author_id": uid,
            "avatar_url": profile.avatar_url if profile else None,
            "content": req.content,
        })

    warning: Optional[str] = None
    try:
        increment("thread", thread.id, "reply_count", 1)
    except PyMongoError as e:
        warning = f"Reply saved, but couldn't update count: {e}"
        logger.warning(warning)
    return ReplyCreated(id=rid, warning=warning)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
