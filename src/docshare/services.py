"""Service layer for uploaded documents and knowledge articles."""

import logging
import re
import time
from pathlib import Path, PurePath
from typing import BinaryIO, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .database import Article, Comment, Document
from .errors import NotFound, StorageError, UploadRejected, ValidationError, handle_service_error


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def stored_filename(original_filename: str, timestamp_ms: Optional[int] = None) -> str:
    """Derive the on-disk name for an upload.

    Everything outside ``[A-Za-z0-9_-]`` is dropped from the base name and a
    millisecond timestamp is appended ahead of the original extension, e.g.
    ``"Q3 report.pdf"`` becomes ``"Q3report_1700000000000.pdf"``.
    """
    path = PurePath(original_filename)
    base = _UNSAFE_FILENAME_CHARS.sub("", path.stem)
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{base}_{timestamp_ms}{path.suffix}"


def _write_limited(stream: BinaryIO, target: Path, max_bytes: int) -> int:
    """Copy ``stream`` into a new file, stopping once ``max_bytes`` is exceeded."""
    written = 0
    with open(target, "xb") as out:
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            written += len(chunk)
            if written > max_bytes:
                raise UploadRejected(
                    f"File too large (limit: {max_bytes // (1024 * 1024)}MB)"
                )
            out.write(chunk)
    return written


def iter_file(stream: BinaryIO) -> Iterator[bytes]:
    """Yield ``stream`` in chunks and close it afterwards."""
    with stream:
        for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
            yield chunk


class DocumentStore:
    """CRUD over document rows and the files they point at."""

    def __init__(self, session_factory: sessionmaker, settings: Settings) -> None:
        self.session_factory = session_factory
        self.upload_dir = Path(settings.upload_dir)
        self.max_upload_bytes = settings.max_upload_bytes
        self.allowed_extensions = {ext.lower() for ext in settings.allowed_extensions}

    def list(self) -> List[Document]:
        """Return all documents, newest upload first."""
        session: Session = self.session_factory()
        try:
            return (
                session.query(Document)
                .order_by(Document.upload_date.desc(), Document.id.desc())
                .all()
            )
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

    def upload(
        self,
        title: Optional[str],
        author: Optional[str],
        stream: Optional[BinaryIO],
        original_filename: Optional[str],
    ) -> int:
        """Store an uploaded file and its metadata row, returning the row id.

        Parameters
        ----------
        title, author: str
            Required metadata; the author comes from the caller's session.
        stream: BinaryIO
            Readable file object holding the upload.
        original_filename: str
            Client-side filename, kept for the download name.

        The file is written before the row is inserted. If the insert fails
        the file is removed again so no unreferenced upload is left behind.
        """
        if stream is None or not original_filename:
            raise ValidationError("No file selected")
        if not title or not author:
            raise ValidationError("Title and author are required")

        extension = PurePath(original_filename).suffix.lower()
        if extension not in self.allowed_extensions:
            logger.warning("rejected upload %s: extension not allowed", original_filename)
            raise UploadRejected(
                "File type not allowed. Only PDF, Word, PowerPoint, Excel "
                "and text files can be uploaded."
            )

        target = self.upload_dir / stored_filename(original_filename)
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            size = _write_limited(stream, target, self.max_upload_bytes)
        except UploadRejected:
            logger.warning("rejected upload %s: too large", original_filename)
            target.unlink(missing_ok=True)
            raise
        except FileExistsError as exc:
            # same name within the same millisecond; never overwrite
            logger.warning("upload name collision for %s", target)
            raise StorageError("Failed to save file") from exc
        except OSError as exc:
            logger.exception("failed to write upload %s", target)
            target.unlink(missing_ok=True)
            raise StorageError("Failed to save file") from exc

        session: Session = self.session_factory()
        try:
            document = Document(
                title=title,
                file_path=str(target),
                original_filename=original_filename,
                author=author,
            )
            session.add(document)
            session.commit()
            logger.info(
                "stored document %s (%d bytes) as %s", document.id, size, target
            )
            return document.id
        except Exception as exc:
            target.unlink(missing_ok=True)
            handle_service_error(session, exc, "Failed to save document")
        finally:
            session.close()

    def get(self, document_id: int) -> Document:
        session: Session = self.session_factory()
        try:
            document = session.get(Document, document_id)
            if document is None:
                raise NotFound("Document not found")
            return document
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

    def download(self, document_id: int) -> Tuple[Document, BinaryIO]:
        """Return the row and an open handle on its file.

        Once opened, the handle stays readable even if the path is deleted
        before the response has been sent.
        """
        document = self.get(document_id)
        try:
            stream = open(document.file_path, "rb")
        except (FileNotFoundError, IsADirectoryError) as exc:
            logger.warning("file for document %s missing: %s", document_id, document.file_path)
            raise NotFound("File does not exist") from exc
        except OSError as exc:
            logger.exception("failed to open %s", document.file_path)
            raise StorageError("Failed to read file") from exc
        return document, stream

    def delete(self, document_id: int) -> None:
        """Remove the file (if still present) and then the row.

        The two steps are not atomic: a failing row delete leaves the row
        pointing at a file that is already gone.
        """
        session: Session = self.session_factory()
        try:
            document = session.get(Document, document_id)
            if document is None:
                raise NotFound("Document not found")
            Path(document.file_path).unlink(missing_ok=True)
            session.delete(document)
            session.commit()
            logger.info("deleted document %s", document_id)
        except Exception as exc:
            handle_service_error(session, exc, "Failed to delete document")
        finally:
            session.close()

    def sweep_orphans(self) -> List[Path]:
        """Delete files in the upload directory that no document references."""
        if not self.upload_dir.is_dir():
            return []
        session: Session = self.session_factory()
        try:
            referenced = {
                Path(path).resolve() for (path,) in session.query(Document.file_path).all()
            }
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

        removed = []
        for path in self.upload_dir.iterdir():
            if path.is_file() and path.resolve() not in referenced:
                path.unlink()
                removed.append(path)
        if removed:
            logger.info("removed %d orphaned uploads", len(removed))
        return removed


class KnowledgeStore:
    """Append-only articles and their comments."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    def list_articles(self) -> List[Article]:
        session: Session = self.session_factory()
        try:
            return (
                session.query(Article)
                .order_by(Article.created_at.desc(), Article.id.desc())
                .all()
            )
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

    def get_article(self, article_id: int) -> Article:
        session: Session = self.session_factory()
        try:
            article = session.get(Article, article_id)
            if article is None:
                raise NotFound("Article not found")
            return article
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

    def list_comments(self, article_id: int) -> List[Comment]:
        """Comments for an article, oldest first. Unknown articles yield ``[]``."""
        session: Session = self.session_factory()
        try:
            return (
                session.query(Comment)
                .filter(Comment.article_id == article_id)
                .order_by(Comment.created_at.asc(), Comment.id.asc())
                .all()
            )
        except Exception as exc:
            handle_service_error(session, exc)
        finally:
            session.close()

    def create_article(self, title: str, content: str, author: str) -> int:
        if not title or not content or not author:
            raise ValidationError("Title, content and author are required")

        session: Session = self.session_factory()
        try:
            article = Article(title=title, content=content, author=author)
            session.add(article)
            session.commit()
            logger.info("article %s created by %s", article.id, author)
            return article.id
        except Exception as exc:
            handle_service_error(session, exc, "Failed to save article")
        finally:
            session.close()

    def create_comment(self, article_id: int, content: str, author: str) -> int:
        """Attach a comment to ``article_id`` without checking the article exists."""
        if not content or not author:
            raise ValidationError("Comment content and author are required")

        session: Session = self.session_factory()
        try:
            comment = Comment(article_id=article_id, content=content, author=author)
            session.add(comment)
            session.commit()
            logger.info("comment %s on article %s by %s", comment.id, article_id, author)
            return comment.id
        except Exception as exc:
            handle_service_error(session, exc, "Failed to save comment")
        finally:
            session.close()
