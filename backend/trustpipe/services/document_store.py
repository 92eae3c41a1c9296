"""
Document store for posts, comments, users and the contribution ledger.

Wraps the SQLAlchemy models behind a document-shaped API: reads return
pydantic documents, partial updates omit untouched fields, and the
DELETE_FIELD sentinel clears a field rather than writing a value. One session
is opened per operation, so a single store can be shared by worker threads.
"""

import operator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from trustpipe.models.content import Comment, Post
from trustpipe.models.ledger import ValueContribution
from trustpipe.models.user import User
from trustpipe.schemas.content import MAX_COMMENT_DEPTH, CommentDocument, PostDocument, UserDocument
from trustpipe.schemas.ledger import ContributionRecord
from trustpipe.utils.logger import get_logger
from trustpipe.utils.timeutil import utcnow

logger = get_logger(__name__)


class _DeleteField:
    """Marker that clears a field on partial update."""

    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD = _DeleteField()

JSON_FIELDS = {
    "semantic_topics", "entities", "claims", "fact_checks", "value_score",
    "discussion_quality", "value_contribution", "value_stats", "trust_score",
}
IMMUTABLE_FIELDS = {"id", "created_at"}

_OPERATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda column, value: column.in_(value),
}


class DocumentStoreError(Exception):
    """Base error for document store operations."""
    pass


class DocumentNotFoundError(DocumentStoreError):
    """Raised when a referenced document does not exist."""
    pass


class CommentDepthError(DocumentStoreError):
    """Raised when a reply would exceed the maximum thread depth."""
    pass


class InvalidFieldError(DocumentStoreError):
    """Raised when an update or query names an unknown or immutable field."""
    pass


class Page(BaseModel):
    """One page of query results ordered by creation time."""
    items: List[PostDocument]
    next_cursor: Optional[str] = None


def encode_cursor(created_at: datetime, doc_id: str) -> str:
    return f"{created_at.isoformat()}|{doc_id}"


def decode_cursor(cursor: str) -> tuple:
    created_at, _, doc_id = cursor.partition("|")
    if not doc_id:
        raise ValueError(f"Malformed cursor: {cursor!r}")
    return datetime.fromisoformat(created_at), doc_id


def _to_json(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, dict):
        return {key: _to_json(item) for key, item in value.items()}
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _column_values(model_cls, doc: BaseModel) -> Dict[str, Any]:
    """Map a document onto column values, leaving unset (None) fields out."""
    values = {}
    for column in model_cls.__table__.columns:
        if not hasattr(doc, column.name):
            continue
        value = getattr(doc, column.name)
        if value is None:
            continue
        values[column.name] = _to_json(value) if column.name in JSON_FIELDS else value
    return values


def _row_dict(model_cls, row) -> Dict[str, Any]:
    return {column.name: getattr(row, column.name) for column in model_cls.__table__.columns}


def _post_from_row(row: Post) -> PostDocument:
    data = _row_dict(Post, row)
    data["text"] = data["text"] or ""
    data["semantic_topics"] = data["semantic_topics"] or []
    data["entities"] = data["entities"] or []
    return PostDocument.model_validate(data)


def _comment_from_row(row: Comment) -> CommentDocument:
    data = _row_dict(Comment, row)
    data["text"] = data["text"] or ""
    return CommentDocument.model_validate(data)


def _user_from_row(row: User) -> UserDocument:
    return UserDocument.model_validate(_row_dict(User, row))


class DocumentStore:
    """Document-shaped access to the pipeline's persisted state."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            logger.error("Database session error", error=str(e))
            session.rollback()
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Posts
    # ------------------------------------------------------------------

    def create_post(self, post: PostDocument, initial_status: Optional[str] = "pending") -> PostDocument:
        """
        Insert a post.

        Args:
            post: Post document to store
            initial_status: Processing status used when the document carries none;
                pass None to store the post as already processed

        Returns:
            The stored post
        """
        values = _column_values(Post, post)
        if "processing_status" not in values and initial_status is not None:
            values["processing_status"] = initial_status
        with self._session() as session:
            row = Post(**values)
            session.add(row)
            session.flush()
            logger.debug("Post created", post_id=row.id, status=row.processing_status)
            return _post_from_row(row)

    def get_post(self, post_id: str) -> Optional[PostDocument]:
        with self._session() as session:
            row = session.get(Post, post_id)
            return _post_from_row(row) if row is not None else None

    def update_post_fields(self, post_id: str, fields: Dict[str, Any]) -> PostDocument:
        """
        Apply a partial update to a post.

        None values are skipped; DELETE_FIELD clears the field.

        Raises:
            DocumentNotFoundError: If the post does not exist
            InvalidFieldError: If a field is unknown or immutable
        """
        return self._update(Post, post_id, fields, _post_from_row)

    def query_posts(
        self,
        field: str,
        op: str,
        value: Any,
        equals: Optional[Dict[str, Any]] = None,
        limit: int = 50,
        start_after: Optional[str] = None,
    ) -> Page:
        """
        Query posts by one filter plus optional equality filters.

        Args:
            field: Column for the main filter
            op: One of ==, !=, <, <=, >, >=, in
            value: Value compared against the field
            equals: Extra equality filters, column name to value
            limit: Page size
            start_after: Cursor from a previous page

        Returns:
            Page of posts ordered by (created_at, id)
        """
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported operator: {op}")

        column = self._column(Post, field)
        stmt = select(Post).where(_OPERATORS[op](column, value))
        for name, expected in (equals or {}).items():
            stmt = stmt.where(self._column(Post, name) == expected)

        if start_after:
            created_at, last_id = decode_cursor(start_after)
            stmt = stmt.where(or_(
                Post.created_at > created_at,
                and_(Post.created_at == created_at, Post.id > last_id),
            ))

        stmt = stmt.order_by(Post.created_at, Post.id).limit(limit + 1)

        with self._session() as session:
            rows = session.execute(stmt).scalars().all()
            items = [_post_from_row(row) for row in rows[:limit]]
            next_cursor = None
            if len(rows) > limit:
                last = rows[limit - 1]
                next_cursor = encode_cursor(last.created_at, last.id)
            return Page(items=items, next_cursor=next_cursor)

    def list_reposts_of(self, original_id: str) -> List[PostDocument]:
        """Get every repost of a post, oldest first."""
        stmt = select(Post).where(Post.repost_of_id == original_id).order_by(Post.created_at, Post.id)
        with self._session() as session:
            return [_post_from_row(row) for row in session.execute(stmt).scalars().all()]

    # ------------------------------------------------------------------
    # Comments
    # ------------------------------------------------------------------

    def create_comment(self, comment: CommentDocument, initial_status: Optional[str] = "pending") -> CommentDocument:
        """
        Insert a comment, computing its depth from the parent.

        Raises:
            DocumentNotFoundError: If the post or parent comment does not exist
            CommentDepthError: If the reply would sit deeper than the maximum depth
        """
        values = _column_values(Comment, comment)
        if "processing_status" not in values and initial_status is not None:
            values["processing_status"] = initial_status

        with self._session() as session:
            if session.get(Post, comment.post_id) is None:
                raise DocumentNotFoundError(f"Post {comment.post_id} not found")

            depth = 0
            if comment.parent_comment_id:
                parent = session.get(Comment, comment.parent_comment_id)
                if parent is None or parent.post_id != comment.post_id:
                    raise DocumentNotFoundError(
                        f"Parent comment {comment.parent_comment_id} not found on post {comment.post_id}"
                    )
                depth = parent.depth + 1

            if depth > MAX_COMMENT_DEPTH:
                raise CommentDepthError(
                    f"Reply to {comment.parent_comment_id} would reach depth {depth} (max {MAX_COMMENT_DEPTH})"
                )

            values["depth"] = depth
            row = Comment(**values)
            session.add(row)
            session.flush()
            return _comment_from_row(row)

    def get_comment(self, comment_id: str) -> Optional[CommentDocument]:
        with self._session() as session:
            row = session.get(Comment, comment_id)
            return _comment_from_row(row) if row is not None else None

    def update_comment_fields(self, comment_id: str, fields: Dict[str, Any]) -> CommentDocument:
        """Apply a partial update to a comment. Same semantics as update_post_fields."""
        return self._update(Comment, comment_id, fields, _comment_from_row)

    def list_comments_for_post(self, post_id: str) -> List[CommentDocument]:
        stmt = select(Comment).where(Comment.post_id == post_id).order_by(Comment.created_at, Comment.id)
        with self._session() as session:
            return [_comment_from_row(row) for row in session.execute(stmt).scalars().all()]

    def list_comments_by_status(self, status: str, limit: int = 50) -> List[CommentDocument]:
        """Get comments in a processing status, oldest first."""
        stmt = (
            select(Comment)
            .where(Comment.processing_status == status)
            .order_by(Comment.created_at, Comment.id)
            .limit(limit)
        )
        with self._session() as session:
            return [_comment_from_row(row) for row in session.execute(stmt).scalars().all()]

    def collect_reply_tree(self, comment_id: str) -> List[str]:
        """
        Collect a comment and all its descendants, parents before children.

        Walks the parent-pointer tree with an explicit stack.

        Raises:
            DocumentNotFoundError: If the root comment does not exist
        """
        with self._session() as session:
            if session.get(Comment, comment_id) is None:
                raise DocumentNotFoundError(f"Comment {comment_id} not found")
            return self._walk_replies(session, comment_id)

    def delete_comment_tree(self, comment_id: str) -> int:
        """
        Delete a comment and its whole reply tree.

        Returns:
            Number of comments deleted
        """
        with self._session() as session:
            if session.get(Comment, comment_id) is None:
                raise DocumentNotFoundError(f"Comment {comment_id} not found")
            ids = self._walk_replies(session, comment_id)
            # Children first so self-referencing foreign keys stay valid
            for batch_start in range(0, len(ids), 500):
                batch = list(reversed(ids))[batch_start:batch_start + 500]
                session.execute(delete(Comment).where(Comment.id.in_(batch)))
            logger.info("Comment tree deleted", comment_id=comment_id, deleted=len(ids))
            return len(ids)

    def _walk_replies(self, session: Session, root_id: str) -> List[str]:
        ordered: List[str] = []
        stack = [root_id]
        while stack:
            current = stack.pop()
            ordered.append(current)
            children = session.execute(
                select(Comment.id)
                .where(Comment.parent_comment_id == current)
                .order_by(Comment.created_at, Comment.id)
            ).scalars().all()
            stack.extend(reversed(children))
        return ordered

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: UserDocument) -> UserDocument:
        with self._session() as session:
            row = User(**_column_values(User, user))
            session.add(row)
            session.flush()
            return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[UserDocument]:
        with self._session() as session:
            row = session.get(User, user_id)
            return _user_from_row(row) if row is not None else None

    def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> UserDocument:
        return self._update(User, user_id, fields, _user_from_row)

    # ------------------------------------------------------------------
    # Contribution ledger
    # ------------------------------------------------------------------

    def add_contribution(self, record: ContributionRecord) -> bool:
        """
        Append a ledger row unless one already exists for user + type + source.

        Returns:
            True if a row was written, False if it already existed
        """
        with self._session() as session:
            if self._contribution_exists(session, record.user_id, record.contribution_type, record.source_id):
                return False

            session.add(ValueContribution(
                user_id=record.user_id,
                contribution_type=record.contribution_type,
                source_id=record.source_id,
                post_id=record.post_id,
                comment_id=record.comment_id,
                value=record.value,
                domain=record.domain,
                created_at=record.created_at or utcnow(),
            ))
            try:
                session.flush()
            except IntegrityError:
                # Lost a race with a concurrent writer for the same source
                session.rollback()
                return False
            return True

    def contribution_exists(self, user_id: str, contribution_type: str, source_id: str) -> bool:
        with self._session() as session:
            return self._contribution_exists(session, user_id, contribution_type, source_id)

    def sum_contributions(self, user_id: str, since: Optional[datetime] = None) -> Dict[str, float]:
        """
        Sum ledger values for a user, grouped by contribution type.

        Args:
            user_id: User to aggregate
            since: Only count rows created at or after this time

        Returns:
            Mapping of contribution type to summed value
        """
        stmt = (
            select(ValueContribution.contribution_type, func.sum(ValueContribution.value))
            .where(ValueContribution.user_id == user_id)
            .group_by(ValueContribution.contribution_type)
        )
        if since is not None:
            stmt = stmt.where(ValueContribution.created_at >= since)

        with self._session() as session:
            return {kind: float(total or 0.0) for kind, total in session.execute(stmt).all()}

    def list_contributions(self, user_id: str, since: Optional[datetime] = None) -> List[ContributionRecord]:
        stmt = (
            select(ValueContribution)
            .where(ValueContribution.user_id == user_id)
            .order_by(ValueContribution.created_at)
        )
        if since is not None:
            stmt = stmt.where(ValueContribution.created_at >= since)

        with self._session() as session:
            return [ContributionRecord.model_validate(row) for row in session.execute(stmt).scalars().all()]

    def _contribution_exists(self, session: Session, user_id: str, contribution_type: str, source_id: str) -> bool:
        stmt = select(ValueContribution.id).where(
            ValueContribution.user_id == user_id,
            ValueContribution.contribution_type == contribution_type,
            ValueContribution.source_id == source_id,
        ).limit(1)
        return session.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _column(self, model_cls, name: str):
        if name not in model_cls.__table__.columns:
            raise InvalidFieldError(f"{model_cls.__tablename__} has no field {name!r}")
        return getattr(model_cls, name)

    def _update(self, model_cls, doc_id: str, fields: Dict[str, Any], to_document: Callable) -> Any:
        for name in fields:
            if name in IMMUTABLE_FIELDS:
                raise InvalidFieldError(f"Field {name!r} cannot be updated")
            self._column(model_cls, name)

        with self._session() as session:
            row = session.get(model_cls, doc_id)
            if row is None:
                raise DocumentNotFoundError(f"{model_cls.__tablename__} {doc_id} not found")

            for name, value in fields.items():
                if value is None:
                    continue
                if value is DELETE_FIELD:
                    setattr(row, name, None)
                elif name in JSON_FIELDS:
                    setattr(row, name, _to_json(value))
                else:
                    setattr(row, name, value)

            session.flush()
            return to_document(row)
