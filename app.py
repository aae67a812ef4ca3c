from __future__ import annotations

import os
from datetime import datetime
from secrets import token_hex
from typing import Any, Dict, Iterable, List, Optional

import requests
from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import (
    Flask,
    abort,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from flask_login import (
    LoginManager,
    UserMixin,
    current_user,
    login_required,
    login_user,
    logout_user,
)
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, TEXT, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.security import check_password_hash

from stores import (
    STORES_PER_PAGE,
    OwnershipError,
    PageResult,
    ParseError,
    StoreForm,
    apply_heart_toggle,
    assert_owner,
    geo_search_query,
    listing_query,
    paginate,
    tag_query,
    tags_list_pipeline,
    text_search_query,
    top_stores_pipeline,
    unique_slug,
)
from uploads import UnsupportedMediaType, ingest


load_dotenv()

app = Flask(__name__)
app.secret_key = os.environ.get("FLASK_SECRET_KEY", token_hex(32))

app.config["MONGODB_URI"] = os.environ.get(
    "MONGODB_URI",
    "mongodb://127.0.0.1:27017/store_directory",
)
app.config["MONGODB_DB_NAME"] = os.environ.get("MONGODB_DB_NAME", "store_directory")
app.config["MONGODB_TIMEOUT_MS"] = int(os.environ.get("MONGODB_TIMEOUT_MS", "5000"))

mongo_client = MongoClient(
    app.config["MONGODB_URI"],
    serverSelectionTimeoutMS=app.config["MONGODB_TIMEOUT_MS"],
)
mongo_db = mongo_client[app.config["MONGODB_DB_NAME"]]

UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", "static/uploads")
DEFAULT_STORE_PHOTO = "images/store.svg"
app.config["UPLOAD_FOLDER"] = UPLOAD_FOLDER
app.config["MAX_CONTENT_LENGTH"] = 5 * 1024 * 1024

login_manager = LoginManager(app)
login_manager.login_view = "login"


def to_object_id(value: Any) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    if value in (None, ""):
        return None
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def jsonable(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(item) for item in value]
    return value


class MongoDocument:
    collection: Any = None

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data = data or {}

    def __getattr__(self, item: str) -> Any:
        if item.startswith("_"):
            raise AttributeError(item)
        if item == "id":
            _id = self._data.get("_id")
            return str(_id) if _id is not None else None
        value = self._data.get(item)
        if isinstance(value, ObjectId):
            return str(value)
        return value

    @property
    def mongo_id(self) -> Optional[ObjectId]:
        return self._data.get("_id")

    @classmethod
    def get(cls, doc_id: Any):
        oid = to_object_id(doc_id)
        if not oid:
            return None
        doc = cls.collection.find_one({"_id": oid})
        return cls(doc) if doc else None

    def to_dict(self) -> Dict[str, Any]:
        payload = jsonable(self._data)
        if "_id" in payload:
            payload["id"] = payload.pop("_id")
        return payload


class User(UserMixin, MongoDocument):
    collection = mongo_db["users"]

    def get_id(self) -> Optional[str]:
        return str(self._data.get("_id")) if self._data.get("_id") else None

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    @classmethod
    def get_by_email(cls, email: str) -> Optional["User"]:
        normalized = cls.normalize_email(email)
        if not normalized:
            return None
        doc = cls.collection.find_one({"email_lower": normalized})
        return cls(doc) if doc else None

    @property
    def heart_ids(self) -> set:
        return {str(store_id) for store_id in self._data.get("hearts") or []}


class Store(MongoDocument):
    collection = mongo_db["stores"]

    def __init__(self, data: Optional[Dict[str, Any]] = None, author: Optional[User] = None) -> None:
        super().__init__(data)
        self.author_user = author
        timestamp = (data or {}).get("created") if data else None
        self.created = timestamp if isinstance(timestamp, datetime) else datetime.utcnow()

    @classmethod
    def get_by_slug(cls, slug: str) -> Optional["Store"]:
        if not slug:
            return None
        doc = cls.collection.find_one({"slug": slug})
        if not doc:
            return None
        return cls(doc, author=User.get(doc.get("author")))


class Review(MongoDocument):
    collection = mongo_db["reviews"]

    def __init__(self, data: Optional[Dict[str, Any]] = None, reviewer: Optional[User] = None) -> None:
        super().__init__(data)
        self.reviewer = reviewer
        timestamp = (data or {}).get("created") if data else None
        self.created = timestamp if isinstance(timestamp, datetime) else datetime.utcnow()


def hydrate_reviews(review_docs: Iterable[Dict[str, Any]]) -> List[Review]:
    docs = list(review_docs)
    if not docs:
        return []
    reviewer_ids = {doc.get("author") for doc in docs if doc.get("author")}
    reviewers: Dict[ObjectId, User] = {}
    if reviewer_ids:
        reviewer_cursor = User.collection.find({"_id": {"$in": list(reviewer_ids)}})
        reviewers = {doc["_id"]: User(doc) for doc in reviewer_cursor}
    return [Review(doc, reviewer=reviewers.get(doc.get("author"))) for doc in docs]


def ensure_indexes() -> None:
    mongo_db.stores.create_index("slug", unique=True)
    mongo_db.stores.create_index([("name", TEXT), ("description", TEXT)])
    mongo_db.stores.create_index([("location", GEOSPHERE)])
    mongo_db.stores.create_index("created")
    mongo_db.users.create_index("email_lower", unique=True)
    mongo_db.reviews.create_index(
        [("store", ASCENDING), ("author", ASCENDING)],
        unique=True,
    )


if not os.environ.get("TESTING"):
    try:
        ensure_indexes()
    except PyMongoError as exc:
        app.logger.warning("Unable to prepare MongoDB collections: %s", exc)


@app.context_processor
def inject_globals() -> Dict[str, Any]:
    return {"current_year": datetime.utcnow().year, "photo_url": resolve_photo_path}


@login_manager.user_loader
def load_user(user_id: str) -> Optional[User]:
    return User.get(user_id)


def resolve_photo_path(filename: Optional[str]) -> str:
    if not filename:
        rel_path = DEFAULT_STORE_PHOTO
    elif str(filename).startswith(("uploads/", "images/")):
        rel_path = filename
    else:
        rel_path = f"uploads/{str(filename).lstrip('/')}"
    return url_for("static", filename=rel_path)


def save_photo(upload) -> Optional[str]:
    if not upload or not upload.filename:
        return None
    result = ingest(upload.read(), upload.mimetype, app.config["UPLOAD_FOLDER"])
    return result.stored_filename


@app.errorhandler(OwnershipError)
def handle_ownership_error(exc: OwnershipError):
    app.logger.warning("Blocked store edit by %s: %s", current_user.get_id(), exc)
    flash(str(exc), "error")
    return redirect(url_for("get_stores"))


@app.errorhandler(UnsupportedMediaType)
def handle_unsupported_media(exc: UnsupportedMediaType):
    flash(str(exc), "error")
    return redirect(request.referrer or url_for("add_store"))


@app.errorhandler(ParseError)
def handle_parse_error(exc: ParseError):
    return jsonify({"error": str(exc)}), 400


@app.route("/")
@app.route("/stores")
@app.route("/stores/page/<int:page>")
def get_stores(page: int = 1):
    count = Store.collection.count_documents({})
    current = paginate(page, STORES_PER_PAGE, count)
    if current.out_of_range:
        flash(
            f"Hey! You asked for page {page}. But that doesn't exist. "
            f"So I put you on page {current.redirect_page}",
            "info",
        )
        return redirect(url_for("get_stores", page=current.redirect_page))
    docs = listing_query(current).run(Store.collection)
    result = PageResult(items=[Store(doc) for doc in docs], total_count=count, page=current)
    return render_template(
        "stores.html",
        title="Stores",
        stores=result.items,
        count=result.total_count,
        page=result.page.effective_page,
        pages=result.page.total_pages,
    )


@app.route("/add")
@login_required
def add_store():
    return render_template("edit_store.html", title="Add Store", form=StoreForm(), store=None)


@app.route("/add", methods=["POST"])
@login_required
def create_store():
    form = StoreForm.from_form(request.form)
    problems = form.errors()
    if problems:
        for problem in problems:
            flash(problem, "error")
        return render_template("edit_store.html", title="Add Store", form=form, store=None)
    doc = form.to_document()
    photo = save_photo(request.files.get("photo"))
    if photo:
        doc["photo"] = photo
    doc["author"] = current_user.mongo_id
    doc["created"] = datetime.utcnow()
    doc["slug"] = unique_slug(Store.collection, form.name)
    Store.collection.insert_one(doc)
    app.logger.info("Store %s created by %s", doc["slug"], current_user.get_id())
    flash(f"Successfully created {form.name}. Care to leave a review?", "success")
    return redirect(url_for("get_store_by_slug", slug=doc["slug"]))


@app.route("/stores/<string:store_id>/edit")
@login_required
def edit_store(store_id: str):
    store = Store.get(store_id)
    if not store:
        abort(404)
    assert_owner(store.author, current_user.get_id())
    return render_template(
        "edit_store.html",
        title=f"Edit {store.name}",
        form=StoreForm.from_document(store._data),
        store=store,
    )


@app.route("/add/<string:store_id>", methods=["POST"])
@login_required
def update_store(store_id: str):
    store = Store.get(store_id)
    if not store:
        abort(404)
    assert_owner(store.author, current_user.get_id())
    form = StoreForm.from_form(request.form)
    problems = form.errors()
    if problems:
        for problem in problems:
            flash(problem, "error")
        return render_template("edit_store.html", title=f"Edit {store.name}", form=form, store=store)
    update_doc = form.to_document()
    if form.name != store.name:
        update_doc["slug"] = unique_slug(Store.collection, form.name, exclude_id=store.mongo_id)
    photo = save_photo(request.files.get("photo"))
    if photo:
        update_doc["photo"] = photo
    updated = Store.collection.find_one_and_update(
        {"_id": store.mongo_id, "author": current_user.mongo_id},
        {"$set": update_doc},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise OwnershipError("You must own a store in order to edit it!")
    app.logger.info("Store %s updated by %s", updated.get("slug"), current_user.get_id())
    flash(f"Successfully updated {updated.get('name')}.", "success")
    return redirect(url_for("edit_store", store_id=store_id))


@app.route("/store/<slug>")
def get_store_by_slug(slug: str):
    store = Store.get_by_slug(slug)
    if not store:
        abort(404)
    reviews_cursor = Review.collection.find({"store": store.mongo_id}).sort("created", DESCENDING)
    reviews = hydrate_reviews(reviews_cursor)
    return render_template("store.html", title=store.name, store=store, reviews=reviews)


@app.route("/tags")
@app.route("/tags/<tag>")
def get_stores_by_tag(tag: Optional[str] = None):
    tags = list(Store.collection.aggregate(tags_list_pipeline()))
    docs = tag_query(tag).run(Store.collection)
    return render_template(
        "tag.html",
        title="Tags",
        tags=tags,
        tag=tag,
        stores=[Store(doc) for doc in docs],
    )


@app.route("/api/search")
def search_stores():
    docs = text_search_query(request.args.get("q", "")).run(Store.collection)
    return jsonify([Store(doc).to_dict() for doc in docs])


@app.route("/api/stores/near")
def map_stores():
    query = geo_search_query(request.args.get("lng"), request.args.get("lat"))
    docs = query.run(Store.collection)
    return jsonify([Store(doc).to_dict() for doc in docs])


@app.route("/map")
def map_page():
    return render_template("map.html", title="Map")


@app.route("/api/stores/<string:store_id>/heart", methods=["POST"])
@login_required
def heart_store(store_id: str):
    store_oid = to_object_id(store_id)
    if not store_oid or not Store.collection.count_documents({"_id": store_oid}, limit=1):
        abort(404)
    result = apply_heart_toggle(User.collection, current_user.mongo_id, store_oid)
    if request.accept_mimetypes.best == "text/html":
        # plain form post without the script: go back to the page it came from
        return redirect(request.referrer or url_for("get_hearts"))
    return jsonify(result.to_dict())


@app.route("/hearts")
@login_required
def get_hearts():
    heart_ids = [to_object_id(store_id) for store_id in current_user.heart_ids]
    docs = Store.collection.find({"_id": {"$in": [oid for oid in heart_ids if oid]}})
    return render_template("stores.html", title="Hearted Stores", stores=[Store(doc) for doc in docs])


@app.route("/top")
def get_top_stores():
    docs = list(Store.collection.aggregate(top_stores_pipeline()))
    return render_template("top_stores.html", title="Top Stores!", stores=[Store(doc) for doc in docs])


@app.route("/reviews/<string:store_id>", methods=["POST"])
@login_required
def add_review(store_id: str):
    store = Store.get(store_id)
    if not store:
        abort(404)
    back = url_for("get_store_by_slug", slug=store.slug)
    if store.author == current_user.get_id():
        flash("You cannot review your own store", "error")
        return redirect(back)
    rating_raw = request.form.get("rating")
    review_text = request.form.get("text", "").strip()
    if not rating_raw:
        flash("Rating is required", "error")
        return redirect(back)
    try:
        rating = int(rating_raw)
    except ValueError:
        flash("Invalid rating value", "error")
        return redirect(back)
    if rating < 1 or rating > 5:
        flash("Rating must be between 1 and 5", "error")
        return redirect(back)
    key = {"store": store.mongo_id, "author": current_user.mongo_id}
    payload = {**key, "rating": rating, "text": review_text, "created": datetime.utcnow()}
    try:
        Review.collection.insert_one(payload)
        flash("Review saved!", "success")
    except DuplicateKeyError:
        payload.pop("_id", None)
        Review.collection.update_one(key, {"$set": payload})
        flash("Your review has been updated", "success")
    return redirect(back)


@app.route("/api/geocode/search")
def geocode_search():
    q = request.args.get("q", "").strip()
    limit = request.args.get("limit", "5")
    if not q or len(q) < 2:
        return jsonify([])
    try:
        resp = requests.get(
            "https://nominatim.openstreetmap.org/search",
            params={
                "q": q,
                "format": "jsonv2",
                "limit": limit,
            },
            headers={
                "User-Agent": "StoreDirectory/1.0 (+http://localhost)",
                "Accept": "application/json",
            },
            timeout=10,
        )
    except requests.RequestException as exc:
        app.logger.warning("Geocode lookup failed for %r: %s", q, exc)
        return jsonify([]), 502
    if resp.status_code != 200:
        return jsonify([]), resp.status_code
    return jsonify(
        [
            {"address": hit.get("display_name"), "lng": float(hit["lon"]), "lat": float(hit["lat"])}
            for hit in resp.json()
            if "lon" in hit and "lat" in hit
        ]
    )


@app.route("/login", methods=["GET", "POST"])
def login():
    if current_user.is_authenticated:
        return redirect(url_for("get_stores"))
    if request.method == "POST":
        email = request.form.get("email", "").strip()
        password = request.form.get("password", "")
        user = User.get_by_email(email)
        if user and check_password_hash(user._data.get("password_hash", ""), password):
            login_user(user)
            next_page = request.args.get("next")
            flash("You are now logged in!", "success")
            return redirect(next_page or url_for("get_stores"))
        flash("Invalid email or password", "error")
    return render_template("login.html", title="Login")


@app.route("/logout")
@login_required
def logout():
    logout_user()
    flash("You are now logged out!", "info")
    return redirect(url_for("get_stores"))


if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=5000)
