from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

# allow importing the parser from repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from bank_statement_parser import ParseError, parse_statement_pdf, statement_to_json  # noqa: E402
from pdf_text import ExtractionError  # noqa: E402
from statement_formats import Category, available_formats  # noqa: E402


logger = logging.getLogger(__name__)

APP_DIR = Path(__file__).resolve().parent
CONFIG_PATH = APP_DIR / "config.json"


class Base(DeclarativeBase):
    pass


class Statement(Base):
    __tablename__ = "statements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    format_name: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    account_number: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    start_date: Mapped[str] = mapped_column(String(16), nullable=False)
    end_date: Mapped[str] = mapped_column(String(16), nullable=False)
    start_balance: Mapped[int] = mapped_column(Integer, nullable=False)
    end_balance: Mapped[int] = mapped_column(Integer, nullable=False)
    total_interest: Mapped[int] = mapped_column(Integer, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    parsed_json: Mapped[str] = mapped_column(Text, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    statement_id: Mapped[int] = mapped_column(ForeignKey("statements.id"), index=True, nullable=False)
    account_number: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    category: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    transaction_date: Mapped[str] = mapped_column(String(16), nullable=False)
    posting_date: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    reference_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    account_suffix: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)


@dataclass(frozen=True)
class User:
    username: str
    token: str
    role: str


class LoginRequest(BaseModel):
    token: str


def load_config(path: Path = CONFIG_PATH) -> dict:
    if not path.exists():
        raise RuntimeError(f"Missing config file: {path}")
    return json.loads(path.read_text(encoding="utf-8"))


def build_user_index(cfg: dict) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for raw in cfg.get("users", []):
        token = str(raw.get("token", "")).strip()
        if not token:
            continue
        role = str(raw.get("role", "user")).strip().lower()
        if role not in {"admin", "user"}:
            raise RuntimeError(f"unsupported role for user {raw.get('username')!r}: {role}")
        users[token] = User(username=str(raw.get("username", "unknown")), token=token, role=role)
    return users


def ensure_admin(user: User) -> None:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin only")


def parse_iso_date_or_400(raw: str, field_name: str) -> str:
    try:
        return date.fromisoformat(raw).isoformat()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field_name} must be YYYY-MM-DD")


def resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = REPO_ROOT / path
    return path


def statement_summary(st: Statement) -> dict:
    return {
        "id": st.id,
        "original_filename": st.original_filename,
        "format": st.format_name,
        "account_number": st.account_number,
        "start_date": st.start_date,
        "end_date": st.end_date,
        "start_balance": st.start_balance,
        "end_balance": st.end_balance,
        "total_interest": st.total_interest,
        "uploaded_at": st.uploaded_at.isoformat(),
        "uploaded_by": st.uploaded_by,
    }


def create_app(cfg: Optional[dict] = None) -> FastAPI:
    cfg = load_config() if cfg is None else cfg

    db_path = resolve_path(cfg.get("database", {}).get("sqlite_path", "web/data/app.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)

    upload_dir = resolve_path(cfg.get("storage", {}).get("upload_dir", "web/data/uploads"))
    upload_dir.mkdir(parents=True, exist_ok=True)

    backend = cfg.get("parser", {}).get("backend", "pypdf")

    engine = create_engine(f"sqlite+pysqlite:///{db_path}", future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)

    user_index = build_user_index(cfg)

    app = FastAPI(title="Bank Statement API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    bearer = HTTPBearer(auto_error=False)

    def get_db() -> Session:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(bearer),
    ) -> User:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="missing bearer token")
        token = credentials.credentials.strip()
        user = user_index.get(token)
        if user is None:
            raise HTTPException(status_code=401, detail="invalid token")
        return user

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}

    @app.get("/api/formats")
    def formats() -> dict:
        return {"formats": available_formats()}

    @app.post("/api/login")
    def login(payload: LoginRequest) -> dict:
        user = user_index.get(payload.token.strip())
        if not user:
            raise HTTPException(status_code=401, detail="invalid token")
        return {"username": user.username, "role": user.role, "token": user.token}

    @app.get("/api/me")
    def me(user: User = Depends(get_current_user)) -> dict:
        return {"username": user.username, "role": user.role}

    @app.post("/api/statements/upload")
    async def upload_statement(
        format_name: str = Query(..., alias="format"),
        file: UploadFile = File(...),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ensure_admin(user)

        if format_name not in available_formats():
            raise HTTPException(status_code=400, detail=f"unknown format: {format_name}")
        if not file.filename or not file.filename.lower().endswith(".pdf"):
            raise HTTPException(status_code=400, detail="only PDF is supported")

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        stored_path = upload_dir / f"{stamp}_{os.path.basename(file.filename)}"

        with stored_path.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                out.write(chunk)

        try:
            statement = parse_statement_pdf(stored_path, format_name, backend=backend)
        except (ParseError, ExtractionError) as e:
            stored_path.unlink(missing_ok=True)
            logger.warning("Rejected upload %s (%s): %s", file.filename, format_name, e)
            raise HTTPException(
                status_code=400,
                detail={"message": "parse failed", "kind": e.kind, "error": str(e)},
            )

        start_date = statement.start_date.isoformat()
        end_date = statement.end_date.isoformat()
        existing = db.scalars(
            select(Statement).where(
                Statement.format_name == format_name,
                Statement.account_number == statement.account_number,
                Statement.start_date == start_date,
                Statement.end_date == end_date,
            )
        ).first()
        if existing is not None:
            stored_path.unlink(missing_ok=True)
            raise HTTPException(
                status_code=409,
                detail={
                    "message": "duplicate statement detected",
                    "existing_statement_id": existing.id,
                    "start_date": existing.start_date,
                    "end_date": existing.end_date,
                },
            )

        st = Statement(
            original_filename=file.filename,
            stored_path=str(stored_path),
            format_name=format_name,
            account_number=statement.account_number,
            start_date=start_date,
            end_date=end_date,
            start_balance=statement.start_balance,
            end_balance=statement.end_balance,
            total_interest=statement.total_interest,
            uploaded_at=datetime.now(timezone.utc),
            uploaded_by=user.username,
            parsed_json=json.dumps(statement_to_json(statement), ensure_ascii=False),
        )
        db.add(st)
        db.flush()

        for tx in statement.transactions:
            db.add(
                Transaction(
                    statement_id=st.id,
                    account_number=statement.account_number,
                    category=tx.category.value,
                    transaction_date=tx.date.isoformat(),
                    posting_date=tx.posting_date.isoformat() if tx.posting_date else None,
                    description=tx.description,
                    reference_number=tx.reference_number,
                    account_suffix=tx.account_suffix,
                    amount=tx.amount,
                )
            )
        db.commit()
        logger.info("Stored statement %d with %d transaction(s)", st.id, len(statement.transactions))

        return {
            "statement_id": st.id,
            "format": format_name,
            "start_date": start_date,
            "end_date": end_date,
            "transactions_count": len(statement.transactions),
        }

    @app.get("/api/statements")
    def list_statements(
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        rows = db.scalars(
            select(Statement).order_by(Statement.id.desc()).offset(offset).limit(limit + 1)
        ).all()
        has_more = len(rows) > limit
        items = [statement_summary(st) for st in rows[:limit]]
        return {
            "items": items,
            "offset": offset,
            "limit": limit,
            "returned": len(items),
            "has_more": has_more,
        }

    @app.get("/api/statements/{statement_id}")
    def get_statement(
        statement_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        st = db.get(Statement, statement_id)
        if not st:
            raise HTTPException(status_code=404, detail="statement not found")
        return {**statement_summary(st), "parsed": json.loads(st.parsed_json)}

    @app.get("/api/transactions")
    def list_transactions(
        statement_id: Optional[int] = Query(default=None),
        category: Optional[str] = Query(default=None),
        tx_date_from: Optional[str] = Query(default=None),
        tx_date_to: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        stmt = select(Transaction).order_by(Transaction.id)

        date_from: Optional[str] = None
        date_to: Optional[str] = None
        if tx_date_from:
            date_from = parse_iso_date_or_400(tx_date_from, "tx_date_from")
        if tx_date_to:
            date_to = parse_iso_date_or_400(tx_date_to, "tx_date_to")
        if date_from and date_to and date_from > date_to:
            raise HTTPException(status_code=400, detail="tx_date_from must be <= tx_date_to")
        if category and category not in {c.value for c in Category}:
            raise HTTPException(status_code=400, detail=f"unknown category: {category}")

        if statement_id is not None:
            stmt = stmt.where(Transaction.statement_id == statement_id)
        if category:
            stmt = stmt.where(Transaction.category == category)
        if date_from:
            stmt = stmt.where(Transaction.transaction_date >= date_from)
        if date_to:
            stmt = stmt.where(Transaction.transaction_date <= date_to)
        if q:
            stmt = stmt.where(Transaction.description.ilike(f"%{q}%"))

        rows = db.scalars(stmt.offset(offset).limit(limit + 1)).all()
        has_more = len(rows) > limit
        out: List[dict] = [
            {
                "id": tx.id,
                "statement_id": tx.statement_id,
                "account_number": tx.account_number,
                "category": tx.category,
                "transaction_date": tx.transaction_date,
                "posting_date": tx.posting_date,
                "description": tx.description,
                "reference_number": tx.reference_number,
                "account_suffix": tx.account_suffix,
                "amount": tx.amount,
            }
            for tx in rows[:limit]
        ]
        return {
            "items": out,
            "offset": offset,
            "limit": limit,
            "returned": len(out),
            "has_more": has_more,
        }

    return app
