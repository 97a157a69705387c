import re
import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, Depends, FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Caller, authenticate, issue_session_token, require_roles, same_email
from config import Config
from database import (
    BlogStore, DonationRequestStore, UserStore,
    get_blog_store, get_database, get_request_store, get_user_store,
    now, oid, serialize,
)
from errors import ApiError, Forbidden, NotFound, ValidationFailed
from lifecycle import LifecycleManager
from schemas import (
    Blog, DonationRequest, DonorStatusUpdate, User, UserProfileUpdate,
    UserRoleUpdate, UserStatusUpdate,
)

logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Blood Donation API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=Config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------- Logging & errors -----------------

@app.middleware("http")
async def log_requests(request: Request, call_next):
    response = await call_next(request)
    caller = getattr(request.state, "caller", None) or "anonymous"
    logger.info("%s %s - %s - %s", request.method, request.url.path, response.status_code, caller)
    return response

@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

@app.exception_handler(PyMongoError)
async def handle_store_error(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

def get_lifecycle(
    requests: DonationRequestStore = Depends(get_request_store),
    users: UserStore = Depends(get_user_store),
) -> LifecycleManager:
    return LifecycleManager(requests, users)

# ---------------- Session -----------------

@app.post("/jwt")
def create_session(response: Response, email: str = Depends(authenticate)):
    token = issue_session_token(email)
    response.set_cookie("token", token, httponly=True, secure=False)
    return {"message": "Jwt created successfully", "token": token}

# ---------------- Donation Requests -----------------

@app.get("/donationRequests", response_model=List[dict])
def list_requests(
    status: Optional[str] = None,
    requesterEmail: Optional[str] = None,
    donorEmail: Optional[str] = None,
    caller: Caller = Depends(require_roles("list_requests")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    items = lifecycle.list(caller, status=status, requester_email=requesterEmail, donor_email=donorEmail)
    return [serialize(it) for it in items]

@app.get("/donationRequests/pending", response_model=List[dict])
def list_pending_requests(
    caller: Caller = Depends(require_roles("list_pending_requests")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return [serialize(it) for it in lifecycle.list_pending()]

@app.get("/donationRequests/pending/{request_id}")
def get_pending_request(
    request_id: str,
    caller: Caller = Depends(require_roles("get_pending_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return serialize(lifecycle.get_pending(request_id))

@app.get("/donationRequests/{request_id}")
def get_request(
    request_id: str,
    caller: Caller = Depends(require_roles("get_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return serialize(lifecycle.get(request_id))

@app.post("/donationRequests", status_code=201)
def create_request(
    payload: DonationRequest,
    caller: Caller = Depends(require_roles("create_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    inserted_id = lifecycle.create(caller, payload)
    return {"message": "Donation request created successfully", "insertedId": inserted_id}

@app.post("/donationRequests/{request_id}/confirm")
def confirm_request(
    request_id: str,
    caller: Caller = Depends(require_roles("confirm_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return lifecycle.confirm(caller, request_id)

@app.put("/donationRequests/{request_id}")
def replace_request(
    request_id: str,
    payload: DonationRequest,
    caller: Caller = Depends(require_roles("replace_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return serialize(lifecycle.replace(caller, request_id, payload))

@app.patch("/donationRequests/{request_id}")
def update_request(
    request_id: str,
    payload: Dict[str, Any] = Body(...),
    caller: Caller = Depends(require_roles("update_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return serialize(lifecycle.update(caller, request_id, payload))

@app.patch("/donationRequests/{request_id}/status/donor")
def finalize_request(
    request_id: str,
    payload: DonorStatusUpdate,
    caller: Caller = Depends(require_roles("finalize_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    return serialize(lifecycle.finalize(caller, request_id, payload.status))

@app.delete("/donationRequests/{request_id}")
def delete_request(
    request_id: str,
    caller: Caller = Depends(require_roles("delete_request")),
    lifecycle: LifecycleManager = Depends(get_lifecycle),
):
    lifecycle.delete(caller, request_id)
    return {"message": "Request deleted"}

# ---------------- Users -----------------

@app.post("/users", status_code=201)
def register_user(payload: User, users: UserStore = Depends(get_user_store)):
    data = payload.model_dump(exclude_none=True)
    data["email"] = data["email"].lower()
    if users.find_by_email(data["email"]):
        raise ValidationFailed("User already exists")
    data.update(role="donor", status="active", createdAt=now())
    try:
        user_id = users.insert(data)
    except DuplicateKeyError:
        raise ValidationFailed("User already exists")
    logger.info("User registered: %s", data["email"])
    return {"message": "User registered successfully", "insertedId": user_id}

@app.get("/users", response_model=List[dict])
def list_users(
    status: Optional[str] = None,
    caller: Caller = Depends(require_roles("list_users")),
    users: UserStore = Depends(get_user_store),
):
    q = {}
    if status:
        q["status"] = status
    return [serialize(u) for u in users.find(q)]

@app.get("/users/search", response_model=List[dict])
def search_users(
    bloodGroup: Optional[str] = None,
    district: Optional[str] = None,
    upazila: Optional[str] = None,
    caller: Caller = Depends(require_roles("search_users")),
    users: UserStore = Depends(get_user_store),
):
    # only active donors show up in search
    q = {"status": "active"}
    if bloodGroup:
        q["bloodGroup"] = bloodGroup
    if district:
        q["district"] = district
    if upazila:
        q["upazila"] = {"$regex": f"^{re.escape(upazila)}$", "$options": "i"}
    return [serialize(u) for u in users.find(q)]

@app.get("/users/{email}")
def get_user(
    email: str,
    caller: Caller = Depends(require_roles("get_user")),
    users: UserStore = Depends(get_user_store),
):
    user = users.find_by_email(email)
    if not user:
        raise NotFound("User not found")
    return serialize(user)

@app.put("/users/{email}")
def update_user(
    email: str,
    payload: UserProfileUpdate,
    caller: Caller = Depends(require_roles("update_user")),
    users: UserStore = Depends(get_user_store),
):
    if not same_email(caller.email, email) and not caller.is_admin:
        raise Forbidden("You can only update your own profile")
    changes = payload.model_dump(exclude_unset=True)
    changes["updatedAt"] = now()
    user = users.update_by_email(email, changes)
    if not user:
        raise NotFound("User not found")
    return serialize(user)

@app.patch("/users/{user_id}/status")
def update_user_status(
    user_id: str,
    payload: UserStatusUpdate,
    caller: Caller = Depends(require_roles("update_user_status")),
    users: UserStore = Depends(get_user_store),
):
    user = users.update(oid(user_id), {"status": payload.status, "updatedAt": now()})
    if not user:
        raise NotFound("User not found")
    logger.info("User %s status -> %s by %s", user_id, payload.status, caller.email)
    return serialize(user)

@app.patch("/users/{user_id}/role")
def update_user_role(
    user_id: str,
    payload: UserRoleUpdate,
    caller: Caller = Depends(require_roles("update_user_role")),
    users: UserStore = Depends(get_user_store),
):
    user = users.update(oid(user_id), {"role": payload.role, "updatedAt": now()})
    if not user:
        raise NotFound("User not found")
    logger.info("User %s role -> %s by %s", user_id, payload.role, caller.email)
    return serialize(user)

@app.get("/users/{email}/role")
def get_user_role(
    email: str,
    caller: Caller = Depends(require_roles("get_user_role")),
    users: UserStore = Depends(get_user_store),
):
    user = users.find_by_email(email)
    if not user:
        return {"role": "user"}
    return {"role": user.get("role") or "user"}

# ---------------- Blogs -----------------

@app.get("/blogs", response_model=List[dict])
def list_blogs(
    caller: Caller = Depends(require_roles("list_blogs")),
    blogs: BlogStore = Depends(get_blog_store),
):
    return [serialize(b) for b in blogs.find()]

@app.post("/blogs", status_code=201)
def create_blog(
    payload: Blog,
    caller: Caller = Depends(require_roles("create_blog")),
    blogs: BlogStore = Depends(get_blog_store),
):
    blog_id = blogs.insert(payload)
    return {"message": "Blog created", "id": blog_id}

@app.patch("/blogs/{blog_id}/publish")
def publish_blog(
    blog_id: str,
    caller: Caller = Depends(require_roles("publish_blog")),
    blogs: BlogStore = Depends(get_blog_store),
):
    if not blogs.set_status(oid(blog_id), "published"):
        raise NotFound("Blog not found")
    return {"message": "Blog published successfully"}

@app.patch("/blogs/{blog_id}/unpublish")
def unpublish_blog(
    blog_id: str,
    caller: Caller = Depends(require_roles("unpublish_blog")),
    blogs: BlogStore = Depends(get_blog_store),
):
    if not blogs.set_status(oid(blog_id), "draft"):
        raise NotFound("Blog not found")
    return {"message": "Blog unpublished successfully"}

@app.delete("/blogs/{blog_id}")
def delete_blog(
    blog_id: str,
    caller: Caller = Depends(require_roles("delete_blog")),
    blogs: BlogStore = Depends(get_blog_store),
):
    if not blogs.delete(oid(blog_id)):
        raise NotFound("Blog not found")
    return {"message": "Blog deleted successfully"}

# ---------------- Health -----------------

@app.get("/")
def read_root():
    return {"message": "Blood Donation API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        db = get_database()
        response["database"] = "✅ Connected & Working"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        response["collections"] = db.list_collection_names()[:10]
    except (RuntimeError, PyMongoError) as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=Config.PORT)
