import logging
import math
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bson import ObjectId
from fastapi import FastAPI, HTTPException, Depends, Form, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ValidationError
from pymongo.errors import PyMongoError

import attempts
from database import create_document, ensure_indexes, get_db, get_documents
from schemas import (
    MockTest,
    MockTestUpdate,
    PublicTest,
    SaveProgressPayload,
    StartResponse,
    SubmitPayload,
    User,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Security settings
SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        ensure_indexes()
        seed_admin()
    except PyMongoError as e:
        logger.warning("Could not prepare the database: %s", e)
    yield


app = FastAPI(title="Mock Test Portal API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(attempts.AttemptError)
async def attempt_error_handler(request: Request, exc: attempts.AttemptError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Something went wrong, please retry"})


# ---------------------- Auth Helpers ----------------------
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


def verify_password(plain_password, password_hash):
    return pwd_context.verify(plain_password, password_hash)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


async def get_current_user(token: str = Depends(oauth2_scheme)):
    credentials_exception = HTTPException(status_code=401, detail="Could not validate credentials")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None or not ObjectId.is_valid(user_id):
            raise credentials_exception
    except JWTError:
        raise credentials_exception
    doc = get_db().user.find_one({"_id": ObjectId(user_id)})
    if not doc or not doc.get("is_active", True):
        raise credentials_exception
    doc["_id"] = str(doc["_id"])  # normalize
    return doc


def require_role(required: List[str]):
    async def role_dep(user = Depends(get_current_user)):
        if user.get("role") not in required:
            raise HTTPException(403, detail="Insufficient permissions")
        return user
    return role_dep


def paginate(page: int, limit: int, total: int):
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def page_args(page: int, limit: int):
    if page < 1 or limit < 1 or limit > 100:
        raise HTTPException(400, detail="page must be >= 1 and limit between 1 and 100")
    return (page - 1) * limit


# ---------------------- Basic Routes ----------------------
@app.get("/")
def read_root():
    return {"message": "Mock Test Portal API running"}


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not available",
        "database_name": None,
        "collections": [],
    }
    try:
        database = get_db()
        response["database_name"] = database.name
        response["collections"] = database.list_collection_names()[:10]
        response["database"] = "connected"
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
        response["database"] = f"error: {str(e)[:80]}"
    return response


# ---------------------- Auth Endpoints ----------------------
def create_user(name: str, email: str, password: str, role: str = "student") -> str:
    # Prevent duplicate
    if get_db().user.find_one({"email": email}):
        raise HTTPException(400, detail="Email already registered")
    uid = create_document("user", User(name=name, email=email, password_hash=get_password_hash(password), role=role))
    logger.info("Registered %s user %s", role, uid)
    return uid


def seed_admin() -> None:
    """Create the ADMIN_EMAIL / ADMIN_PASSWORD account on startup if it is missing."""
    email, password = os.getenv("ADMIN_EMAIL"), os.getenv("ADMIN_PASSWORD")
    if not email or not password or get_db().user.find_one({"email": email}):
        return
    create_user("Administrator", email, password, role="admin")


# Self-registration always yields a student; admins come from seed_admin or /admin/users
@app.post("/auth/register", response_model=Token)
async def register(name: str = Form(...), email: str = Form(...), password: str = Form(...)):
    uid = create_user(name, email, password)
    token = create_access_token({"sub": uid, "role": "student"})
    return Token(access_token=token)


@app.post("/auth/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends()):
    user = get_db().user.find_one({"email": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(401, detail="Incorrect email or password")
    token = create_access_token({"sub": str(user["_id"]), "role": user.get("role", "student")})
    return Token(access_token=token)


@app.get("/auth/me")
async def me(user = Depends(get_current_user)):
    return {k: v for k, v in user.items() if k != "password_hash"}


# ---------------------- Admin: Tests ----------------------
@app.post("/admin/tests", status_code=201)
def create_test(payload: MockTest, user = Depends(require_role(["admin"]))):
    payload.created_by = user["_id"]
    payload.attempt_count = 0
    tid = create_document("mocktest", payload)
    logger.info("Created test %s (%s)", tid, payload.slug)
    return {"id": tid, "slug": payload.slug, "totalMarks": payload.total_marks}


@app.get("/admin/tests", dependencies=[Depends(require_role(["admin"]))])
def admin_list_tests(page: int = 1, limit: int = 10, category: Optional[str] = None,
                     examType: Optional[str] = None, isActive: Optional[bool] = None):
    skip = page_args(page, limit)
    query = {}
    if category:
        query["category"] = category
    if examType:
        query["exam_type"] = examType
    if isActive is not None:
        query["is_active"] = isActive
    docs = get_documents("mocktest", query, limit=limit, skip=skip, sort=[("created_at", -1)])
    tests = []
    for d in docs:
        test = MockTest.model_validate(d).model_dump(by_alias=True)
        test["id"] = str(d["_id"])
        tests.append(test)
    return {"tests": tests, "pagination": paginate(page, limit, get_db().mocktest.count_documents(query))}


@app.get("/admin/tests/{test_id}", dependencies=[Depends(require_role(["admin"]))])
def admin_get_test(test_id: str):
    test = attempts.load_test(test_id, active_only=False)
    data = test.model_dump(by_alias=True)
    data["id"] = test_id
    return data


@app.put("/admin/tests/{test_id}", dependencies=[Depends(require_role(["admin"]))])
def update_test(test_id: str, payload: MockTestUpdate):
    current = attempts.load_test(test_id, active_only=False)
    merged = current.model_dump()
    merged.update(payload.model_dump(exclude_unset=True))
    try:
        # re-validate so totals and slug are recomputed from the new sections
        updated = MockTest.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(400, detail=e.errors(include_url=False, include_context=False))
    get_db().mocktest.update_one(
        {"_id": ObjectId(test_id)},
        {"$set": {**updated.model_dump(), "updated_at": datetime.now(timezone.utc)}},
    )
    logger.info("Updated test %s", test_id)
    data = updated.model_dump(by_alias=True)
    data["id"] = test_id
    return data


@app.delete("/admin/tests/{test_id}", dependencies=[Depends(require_role(["admin"]))])
def delete_test(test_id: str):
    result = get_db().mocktest.delete_one({"_id": attempts.parse_object_id(test_id, "test id")})
    if result.deleted_count == 0:
        raise HTTPException(404, detail="Test not found")
    logger.info("Deleted test %s", test_id)
    return {"deleted": True}


# ---------------------- Admin: Users ----------------------
@app.post("/admin/users", status_code=201, dependencies=[Depends(require_role(["admin"]))])
def admin_create_user(name: str = Form(...), email: str = Form(...), password: str = Form(...),
                      role: str = Form("student")):
    if role not in ("admin", "student"):
        raise HTTPException(400, detail="Invalid role")
    return {"id": create_user(name, email, password, role=role), "role": role}


# ---------------------- Student: Tests & Attempt Engine ----------------------
@app.get("/tests")
def list_tests(page: int = 1, limit: int = 10, category: Optional[str] = None,
               examType: Optional[str] = None, user = Depends(get_current_user)):
    skip = page_args(page, limit)
    query = {"is_active": True}
    if category:
        query["category"] = category
    if examType:
        query["exam_type"] = examType
    docs = get_documents("mocktest", query, limit=limit, skip=skip, sort=[("created_at", -1)])
    tests = [PublicTest.from_test(str(d["_id"]), MockTest.model_validate(d)) for d in docs]
    return {"tests": tests, "pagination": paginate(page, limit, get_db().mocktest.count_documents(query))}


# Registered before /tests/{test_id} so "attempts" is not read as a test id
@app.get("/tests/attempts")
def my_attempts(page: int = 1, limit: int = 10, testId: Optional[str] = None, user = Depends(get_current_user)):
    skip = page_args(page, limit)
    query = {"user_id": user["_id"], "is_completed": True}
    if testId:
        query["test_id"] = testId
    docs = get_documents("attempt", query, limit=limit, skip=skip, sort=[("submitted_at", -1)])
    titles = {}
    for tid in {d["test_id"] for d in docs}:
        t = get_db().mocktest.find_one({"_id": ObjectId(tid)}, {"title": 1}) if ObjectId.is_valid(tid) else None
        titles[tid] = t.get("title") if t else None
    views = []
    for d in docs:
        view = attempts.attempt_view(d)
        view.test_title = titles.get(d["test_id"])
        views.append(view)
    return {"attempts": views, "pagination": paginate(page, limit, get_db().attempt.count_documents(query))}


@app.get("/tests/attempts/{attempt_id}")
def get_attempt(attempt_id: str, user = Depends(get_current_user)):
    doc, test = attempts.fetch_attempt(attempt_id, user)
    return attempts.attempt_view(doc, test)


@app.get("/tests/attempts/{attempt_id}/answers")
def get_answer_key(attempt_id: str, user = Depends(get_current_user)):
    return attempts.answer_key(attempt_id, user)


@app.get("/tests/{test_id}")
def get_test(test_id: str, user = Depends(get_current_user)):
    test = attempts.load_test(test_id)
    return PublicTest.from_test(test_id, test)


@app.post("/tests/{test_id}/start", response_model=StartResponse)
def start_test(test_id: str, user = Depends(get_current_user)):
    doc, test, resumed = attempts.start_attempt(test_id, user)
    started_at = attempts.as_utc(doc["started_at"])
    body = StartResponse(
        attempt_id=str(doc["_id"]),
        started_at=started_at,
        duration=test.duration,
        time_remaining=attempts.time_remaining(started_at, test.duration),
        resumed=resumed,
        answers=doc.get("answers") or [],
        test=PublicTest.from_test(test_id, test),
    )
    return JSONResponse(status_code=200 if resumed else 201, content=body.model_dump(mode="json", by_alias=True))


@app.post("/tests/{test_id}/save-progress")
def save_progress(test_id: str, payload: SaveProgressPayload, user = Depends(get_current_user)):
    attempts.save_progress(test_id, payload.attempt_id, payload.answers, user)
    return {"saved": True}


@app.post("/tests/{test_id}/submit")
def submit_test(test_id: str, payload: SubmitPayload, user = Depends(get_current_user)):
    doc = attempts.submit_attempt(test_id, payload.attempt_id, payload.answers, payload.is_auto_submit, user)
    test = attempts.load_test(test_id, active_only=False)
    return attempts.attempt_view(doc, test)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
