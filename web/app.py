from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, create_engine, func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

# allow importing the parser from repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from mt940_statement_parser import (  # noqa: E402
    CD_CREDIT,
    CD_CREDIT_CANCELLATION,
    CD_DEBIT,
    CD_DEBIT_CANCELLATION,
    UNSTRUCTURED_TAG,
    ParseError,
    parse,
    statements_to_json,
)


APP_DIR = Path(__file__).resolve().parent
CONFIG_PATH = Path(os.environ.get("MT940_WEB_CONFIG", APP_DIR / "config.json"))
ALLOWED_SUFFIXES = {".sta", ".mt940", ".txt"}
SIGNS = {
    CD_CREDIT: 1,
    CD_DEBIT_CANCELLATION: 1,
    CD_DEBIT: -1,
    CD_CREDIT_CANCELLATION: -1,
}

log = logging.getLogger("mt940_web")


class Base(DeclarativeBase):
    pass


class StatementFile(Base):
    __tablename__ = "statement_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    stored_path: Mapped[str] = mapped_column(String(1024), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    statements_count: Mapped[int] = mapped_column(Integer, nullable=False)
    parsed_json: Mapped[str] = mapped_column(Text, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    statement_file_id: Mapped[int] = mapped_column(ForeignKey("statement_files.id"), index=True, nullable=False)
    statement_index: Mapped[int] = mapped_column(Integer, nullable=False)
    statement_date: Mapped[str] = mapped_column(String(16), nullable=False)

    booking_date: Mapped[Optional[str]] = mapped_column(String(16), index=True, nullable=True)
    valuta_date: Mapped[str] = mapped_column(String(16), nullable=False)
    credit_debit: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    signed_amount: Mapped[float] = mapped_column(Float, nullable=False)
    transaction_code: Mapped[str] = mapped_column(String(8), nullable=False)

    booking_text: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    account_number: Mapped[str] = mapped_column(String(64), nullable=False)
    bank_code: Mapped[str] = mapped_column(String(64), nullable=False)
    remittance: Mapped[str] = mapped_column(Text, nullable=False)
    end_to_end_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    structured_json: Mapped[str] = mapped_column(Text, nullable=False)


@dataclass(frozen=True)
class User:
    username: str
    token: str
    role: str


class LoginRequest(BaseModel):
    token: str


def load_config() -> dict:
    if not CONFIG_PATH.exists():
        raise RuntimeError(f"Missing config file: {CONFIG_PATH}")
    return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))


def build_user_index(cfg: dict) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for raw in cfg.get("users", []):
        token = str(raw.get("token", "")).strip()
        if not token:
            continue
        role = str(raw.get("role", "user")).strip().lower()
        if role not in {"admin", "user"}:
            raise RuntimeError(f"unsupported role: {role}")
        users[token] = User(
            username=str(raw.get("username", "unknown")),
            token=token,
            role=role,
        )
    return users


def ensure_admin(user: User) -> None:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin permission required")


def resolve_path(raw: str) -> Path:
    path = Path(raw)
    if not path.is_absolute():
        path = REPO_ROOT / path
    return path


def parse_iso_date_or_400(raw: str, field_name: str) -> str:
    value = (raw or "").strip()
    try:
        parsed = date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"invalid {field_name}, expected YYYY-MM-DD")
    return parsed.isoformat()


def transaction_rows(statement_file_id: int, parsed: List[dict]) -> List[Transaction]:
    rows: List[Transaction] = []
    for idx, st in enumerate(parsed):
        for tx in st["transactions"]:
            descr = tx["description"]
            structured = descr["description"]
            amount = float(tx["amount"])
            rows.append(
                Transaction(
                    statement_file_id=statement_file_id,
                    statement_index=idx,
                    statement_date=st["date"],
                    booking_date=tx["booking_date"],
                    valuta_date=tx["valuta_date"],
                    credit_debit=tx["credit_debit"],
                    amount=amount,
                    signed_amount=amount * SIGNS[tx["credit_debit"]],
                    transaction_code=tx["transaction_code"],
                    booking_text=descr["booking_text"],
                    name=descr["name"],
                    account_number=descr["account_number"],
                    bank_code=descr["bank_code"],
                    remittance=structured.get(UNSTRUCTURED_TAG, ""),
                    end_to_end_ref=structured.get("EREF"),
                    structured_json=json.dumps(structured, ensure_ascii=False),
                )
            )
    return rows


def store_statement_file(
    db: Session,
    upload_dir: Path,
    filename: str,
    content: bytes,
    digest: str,
    username: str,
    parsed: List[dict],
) -> Tuple[StatementFile, List[Transaction]]:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    stored_path = upload_dir / f"{stamp}_{os.path.basename(filename)}"
    stored_path.write_bytes(content)

    try:
        sf = StatementFile(
            original_filename=filename,
            stored_path=str(stored_path),
            sha256=digest,
            uploaded_at=datetime.now(timezone.utc),
            uploaded_by=username,
            statements_count=len(parsed),
            parsed_json=json.dumps(parsed, ensure_ascii=False),
        )
        db.add(sf)
        db.flush()

        rows = transaction_rows(sf.id, parsed)
        db.add_all(rows)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        stored_path.unlink(missing_ok=True)
        raise
    return sf, rows


def transaction_to_dict(tx: Transaction) -> dict:
    return {
        "id": tx.id,
        "statement_file_id": tx.statement_file_id,
        "statement_index": tx.statement_index,
        "statement_date": tx.statement_date,
        "booking_date": tx.booking_date,
        "valuta_date": tx.valuta_date,
        "credit_debit": tx.credit_debit,
        "amount": tx.amount,
        "signed_amount": tx.signed_amount,
        "transaction_code": tx.transaction_code,
        "booking_text": tx.booking_text,
        "name": tx.name,
        "account_number": tx.account_number,
        "bank_code": tx.bank_code,
        "remittance": tx.remittance,
        "end_to_end_ref": tx.end_to_end_ref,
        "structured": json.loads(tx.structured_json),
    }


def create_app(cfg: Optional[dict] = None) -> FastAPI:
    if cfg is None:
        cfg = load_config()

    db_path = resolve_path(cfg.get("database", {}).get("sqlite_path", "web/data/app.db"))
    db_path.parent.mkdir(parents=True, exist_ok=True)

    upload_dir = resolve_path(cfg.get("storage", {}).get("upload_dir", "web/data/uploads"))
    upload_dir.mkdir(parents=True, exist_ok=True)

    encoding = cfg.get("parser", {}).get("encoding", "latin-1")

    engine = create_engine(
        f"sqlite+pysqlite:///{db_path}",
        connect_args={"check_same_thread": False},
        future=True,
    )
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)

    user_index = build_user_index(cfg)

    app = FastAPI(title="MT940 Statement API", version="0.1.0")
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

    @app.post("/api/login")
    def login(payload: LoginRequest) -> dict:
        token = payload.token.strip()
        user = user_index.get(token)
        if not user:
            raise HTTPException(status_code=401, detail="invalid token")
        return {
            "username": user.username,
            "role": user.role,
            "token": user.token,
        }

    @app.get("/api/me")
    def me(user: User = Depends(get_current_user)) -> dict:
        return {
            "username": user.username,
            "role": user.role,
        }

    @app.post("/api/statements/upload")
    async def upload_statement(
        file: UploadFile = File(...),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ensure_admin(user)

        filename = file.filename or ""
        if Path(filename).suffix.lower() not in ALLOWED_SUFFIXES:
            raise HTTPException(status_code=400, detail="only .sta, .mt940 and .txt files are supported")

        content = bytearray()
        while True:
            chunk = await file.read(1024 * 1024)
            if not chunk:
                break
            content.extend(chunk)
        digest = hashlib.sha256(content).hexdigest()

        existing = db.scalars(select(StatementFile).where(StatementFile.sha256 == digest)).first()
        if existing is not None:
            raise HTTPException(
                status_code=409,
                detail={
                    "message": "duplicate statement file detected",
                    "existing_statement_file_id": existing.id,
                    "original_filename": existing.original_filename,
                },
            )

        try:
            statements = parse(bytes(content).decode(encoding))
        except (ParseError, UnicodeDecodeError) as e:
            log.warning("Rejected upload %s from %s: %s", filename, user.username, e)
            raise HTTPException(status_code=400, detail=f"parse failed: {e}")
        parsed = statements_to_json(statements)

        try:
            sf, rows = store_statement_file(db, upload_dir, filename, bytes(content), digest, user.username, parsed)
        except IntegrityError:
            # lost a race against a concurrent upload of the same file
            raise HTTPException(status_code=409, detail={"message": "duplicate statement file detected"})

        log.info(
            "Stored %s as statement file %d (%d statements, %d transactions)",
            filename,
            sf.id,
            len(parsed),
            len(rows),
        )
        return {
            "statement_file_id": sf.id,
            "statements_count": len(parsed),
            "transactions_count": len(rows),
        }

    @app.get("/api/statements")
    def list_statements(
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        total = db.scalar(select(func.count()).select_from(StatementFile)) or 0
        rows = db.scalars(
            select(StatementFile).order_by(StatementFile.id.desc()).offset(offset).limit(limit)
        ).all()
        items = [
            {
                "id": sf.id,
                "original_filename": sf.original_filename,
                "uploaded_at": sf.uploaded_at.isoformat(),
                "uploaded_by": sf.uploaded_by,
                "statements_count": sf.statements_count,
            }
            for sf in rows
        ]
        return {
            "items": items,
            "offset": offset,
            "limit": limit,
            "returned": len(items),
            "total": total,
            "has_more": offset + len(items) < total,
        }

    @app.get("/api/statements/{statement_file_id}")
    def get_statement(
        statement_file_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        sf = db.get(StatementFile, statement_file_id)
        if not sf:
            raise HTTPException(status_code=404, detail="statement file not found")
        return {
            "id": sf.id,
            "original_filename": sf.original_filename,
            "uploaded_at": sf.uploaded_at.isoformat(),
            "uploaded_by": sf.uploaded_by,
            "parsed": json.loads(sf.parsed_json),
        }

    @app.get("/api/transactions")
    def list_transactions(
        statement_file_id: Optional[int] = Query(default=None),
        credit_debit: Optional[str] = Query(default=None),
        booking_date_from: Optional[str] = Query(default=None),
        booking_date_to: Optional[str] = Query(default=None),
        q: Optional[str] = Query(default=None),
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        stmt = select(Transaction).order_by(Transaction.id.asc())

        date_from: Optional[str] = None
        date_to: Optional[str] = None
        if booking_date_from:
            date_from = parse_iso_date_or_400(booking_date_from, "booking_date_from")
        if booking_date_to:
            date_to = parse_iso_date_or_400(booking_date_to, "booking_date_to")
        if date_from and date_to and date_from > date_to:
            raise HTTPException(status_code=400, detail="booking_date_from must be <= booking_date_to")
        if credit_debit and credit_debit not in SIGNS:
            raise HTTPException(status_code=400, detail=f"invalid credit_debit: {credit_debit}")

        if statement_file_id is not None:
            stmt = stmt.where(Transaction.statement_file_id == statement_file_id)
        if credit_debit:
            stmt = stmt.where(Transaction.credit_debit == credit_debit)
        if date_from:
            stmt = stmt.where(Transaction.booking_date >= date_from)
        if date_to:
            stmt = stmt.where(Transaction.booking_date <= date_to)
        if q:
            stmt = stmt.where(or_(Transaction.name.ilike(f"%{q}%"), Transaction.remittance.ilike(f"%{q}%")))

        rows = db.scalars(stmt.offset(offset).limit(limit + 1)).all()
        has_more = len(rows) > limit
        out = [transaction_to_dict(tx) for tx in rows[:limit]]
        return {
            "items": out,
            "offset": offset,
            "limit": limit,
            "returned": len(out),
            "has_more": has_more,
        }

    @app.get("/api/summary")
    def get_summary(
        statement_file_id: int = Query(..., ge=1),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        sf = db.get(StatementFile, statement_file_id)
        if not sf:
            raise HTTPException(status_code=404, detail="statement file not found")

        rows = db.scalars(select(Transaction).where(Transaction.statement_file_id == statement_file_id)).all()

        per_statement: Dict[int, dict] = {}
        for tx in rows:
            entry = per_statement.setdefault(
                tx.statement_index,
                {
                    "statement_index": tx.statement_index,
                    "statement_date": tx.statement_date,
                    "totals": {cd: 0.0 for cd in SIGNS},
                    "net": 0.0,
                    "transactions_count": 0,
                },
            )
            entry["totals"][tx.credit_debit] += tx.amount
            entry["net"] += tx.signed_amount
            entry["transactions_count"] += 1

        statements = []
        for idx in sorted(per_statement.keys()):
            entry = per_statement[idx]
            entry["totals"] = {cd: round(v, 2) for cd, v in entry["totals"].items()}
            entry["net"] = round(entry["net"], 2)
            statements.append(entry)

        return {
            "statement_file_id": sf.id,
            "original_filename": sf.original_filename,
            "statements": statements,
        }

    return app
