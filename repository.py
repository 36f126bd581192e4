"""Read-side queries: fetch documents and map them, dropping malformed ones."""

from typing import List, Optional

from pymongo import ASCENDING, DESCENDING

from database import get_document, get_documents
from schemas import Group, Like, Post, Reply, Thread, User, map_documents

NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]
OLDEST_FIRST = [("created_at", ASCENDING), ("_id", ASCENDING)]


def fetch_user(user_id: str) -> Optional[User]:
    return User.from_document(get_document("user", user_id))


def fetch_user_by_username(username: str) -> Optional[User]:
    docs = get_documents("user", {"username": username}, 1)
    return User.from_document(docs[0]) if docs else None


def fetch_posts(limit: int = 50) -> List[Post]:
    return map_documents(Post, get_documents("post", {}, limit, sort=NEWEST_FIRST))


def fetch_post(post_id: str) -> Optional[Post]:
    return Post.from_document(get_document("post", post_id))


def fetch_groups(limit: int = 50) -> List[Group]:
    return map_documents(Group, get_documents("group", {}, limit, sort=NEWEST_FIRST))


def fetch_group(group_id: str) -> Optional[Group]:
    return Group.from_document(get_document("group", group_id))


def fetch_threads(group_id: str, limit: int = 100) -> List[Thread]:
    return map_documents(Thread, get_documents("thread", {"group_id": group_id}, limit, sort=NEWEST_FIRST))


def fetch_thread(group_id: str, thread_id: str) -> Optional[Thread]:
    thread = Thread.from_document(get_document("thread", thread_id))
    if thread is None or thread.group_id != group_id:
        return None
    return thread


def fetch_replies(thread_id: str, limit: int = 500) -> List[Reply]:
    return map_documents(Reply, get_documents("reply", {"thread_id": thread_id}, limit, sort=OLDEST_FIRST))


def has_liked(thread_id: str, user_id: Optional[str]) -> bool:
    if user_id is None:
        return False
    return get_document("like", Like.key(thread_id, user_id)) is not None
