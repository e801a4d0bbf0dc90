from dataclasses import asdict
from functools import wraps

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from .access import Action, Role, parse_actor, require
from .app_api import AppAPI
from .database import DB_FILE, connect
from .errors import (
    ActiveSubscriptionError,
    AuthenticationError,
    AuthorizationError,
    ConcurrentModificationError,
    GymError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)

app = Flask(__name__)
app.config.setdefault("DB_PATH", DB_FILE)


def get_api() -> AppAPI:
    """One AppAPI (and sqlite connection) per request."""
    if "app_api" not in g:
        g.app_api = AppAPI(connection=connect(app.config["DB_PATH"]))
    return g.app_api


@app.teardown_appcontext
def shutdown_session(exception=None):
    app_api = g.pop("app_api", None)
    if app_api is not None:
        app_api.close()


def requires(action: Action):
    """Resolves the caller from X-User-Id / X-User-Role and checks the capability."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            g.actor = parse_actor(
                request.headers.get("X-User-Id"), request.headers.get("X-User-Role")
            )
            try:
                require(g.actor, action)
            except AuthorizationError:
                app.logger.warning(
                    f"Role check failed: {g.actor.role.value} -> {action.value} "
                    f"({request.method} {request.path})"
                )
                raise
            return view(*args, **kwargs)

        return wrapper

    return decorator


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("No JSON data provided.")
    return data


def _my_member_id() -> int:
    return get_api().member_for_user(g.actor.user_id).id


def _schedule_scope():
    """(acting_member_id, acting_trainer_id) of the caller. Administrators are not scoped."""
    if g.actor.role is Role.MEMBER:
        return _my_member_id(), None
    if g.actor.role is Role.TRAINER:
        return None, get_api().trainer_for_user(g.actor.user_id).id
    return None, None


# --- Error mapping ---


@app.errorhandler(ValidationError)
def handle_validation_error(e):
    app.logger.warning(f"Validation error on {request.method} {request.path}: {e}")
    return jsonify({"error": str(e)}), 400


@app.errorhandler(AuthenticationError)
def handle_authentication_error(e):
    return jsonify({"error": str(e)}), 401


@app.errorhandler(AuthorizationError)
def handle_authorization_error(e):
    return jsonify({"error": str(e) or "Access denied"}), 403


@app.errorhandler(NotFoundError)
def handle_not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(InvalidTransitionError)
@app.errorhandler(ActiveSubscriptionError)
@app.errorhandler(ConcurrentModificationError)
def handle_conflict(e):
    return jsonify({"error": str(e)}), 409


@app.errorhandler(StorageError)
def handle_storage_error(e):
    app.logger.error(f"Storage error on {request.method} {request.path}: {e}")
    return jsonify({"error": "Server error"}), 500


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    return jsonify({"error": e.description}), e.code


@app.errorhandler(Exception)
def handle_unexpected(e):
    if isinstance(e, GymError):
        return jsonify({"error": str(e)}), 500
    app.logger.error(f"Unexpected error on {request.method} {request.path}: {e}", exc_info=True)
    return jsonify({"error": "Server error"}), 500


# --- Health ---


@app.route("/api/health", methods=["GET"])
def health():
    return jsonify({"status": "OK", "message": "Gym subscription API is running"})


# --- Plans ---


@app.route("/api/subscriptions/plans", methods=["GET"])
@requires(Action.VIEW_PLANS)
def get_plan_types_api():
    return jsonify(get_api().get_plan_types())


@app.route("/api/plans", methods=["GET"])
@requires(Action.VIEW_PLANS)
def get_all_plans_api():
    return jsonify([asdict(p) for p in get_api().get_all_plans()])


@app.route("/api/plans", methods=["POST"])
@requires(Action.MANAGE_PLANS)
def add_plan_api():
    data = _json_body()
    plan = get_api().add_plan(data.get("name"), data.get("duration"), data.get("price"))
    return jsonify(asdict(plan)), 201


@app.route("/api/plans/<int:plan_id>", methods=["GET"])
@requires(Action.VIEW_PLANS)
def get_plan_api(plan_id: int):
    return jsonify(asdict(get_api().get_plan(plan_id)))


@app.route("/api/plans/<int:plan_id>", methods=["PUT"])
@requires(Action.MANAGE_PLANS)
def update_plan_api(plan_id: int):
    data = _json_body()
    plan = get_api().update_plan(plan_id, data.get("name"), data.get("duration"), data.get("price"))
    return jsonify(asdict(plan))


@app.route("/api/plans/<int:plan_id>", methods=["DELETE"])
@requires(Action.MANAGE_PLANS)
def delete_plan_api(plan_id: int):
    get_api().delete_plan(plan_id)
    return jsonify({"message": "Plan deleted successfully"})


# --- Subscriptions (administrative) ---


@app.route("/api/subscriptions", methods=["GET"])
@requires(Action.MANAGE_SUBSCRIPTIONS)
def get_all_subscriptions_api():
    status_filter = request.args.get("status")
    return jsonify([asdict(s) for s in get_api().get_all_subscriptions(status_filter)])


@app.route("/api/subscriptions", methods=["POST"])
@requires(Action.MANAGE_SUBSCRIPTIONS)
def create_subscription_api():
    data = _json_body()
    result = get_api().purchase_subscription(
        data.get("member_id"),
        plan_id=data.get("plan_id"),
        plan_type=data.get("plan_type"),
        payment_method=data.get("payment_method"),
    )
    return jsonify(asdict(result)), 201


@app.route("/api/subscriptions/assign/<int:member_id>", methods=["POST"])
@requires(Action.MANAGE_SUBSCRIPTIONS)
def assign_plan_api(member_id: int):
    data = request.get_json(silent=True) or {}
    result = get_api().assign_plan_to_member(
        member_id,
        plan_id=data.get("plan_id"),
        plan_type=data.get("plan_type"),
        payment_method=data.get("payment_method"),
    )
    return jsonify(asdict(result)), 201


@app.route("/api/subscriptions/member/<int:member_id>", methods=["GET"])
@requires(Action.VIEW_MEMBER_SUBSCRIPTIONS)
def get_member_subscriptions_api(member_id: int):
    return jsonify([asdict(s) for s in get_api().get_member_subscriptions(member_id)])


@app.route("/api/subscriptions/<int:subscription_id>/<action>", methods=["PATCH"])
@requires(Action.MANAGE_SUBSCRIPTIONS)
def change_subscription_status_api(subscription_id: int, action: str):
    app_api = get_api()
    handlers = {
        "pause": app_api.pause_subscription,
        "resume": app_api.resume_subscription,
        "cancel": app_api.cancel_subscription,
    }
    if action not in handlers:
        return jsonify({"error": f"Unknown action '{action}'."}), 404
    return jsonify(asdict(handlers[action](subscription_id)))


@app.route("/api/subscriptions/<int:subscription_id>", methods=["DELETE"])
@requires(Action.MANAGE_SUBSCRIPTIONS)
def delete_subscription_api(subscription_id: int):
    get_api().delete_subscription(subscription_id)
    return jsonify({"message": "Subscription deleted successfully"})


# --- Subscriptions (member self-service) ---


@app.route("/api/subscriptions/my", methods=["GET"])
@requires(Action.MANAGE_OWN_SUBSCRIPTION)
def get_my_subscriptions_api():
    return jsonify([asdict(s) for s in get_api().get_my_subscriptions(g.actor.user_id)])


@app.route("/api/subscriptions/my/current", methods=["GET"])
@requires(Action.MANAGE_OWN_SUBSCRIPTION)
def get_my_current_subscription_api():
    subscription = get_api().get_my_current_subscription(g.actor.user_id)
    return jsonify(asdict(subscription) if subscription else None)


@app.route("/api/subscriptions/me/subscribe", methods=["POST"])
@requires(Action.MANAGE_OWN_SUBSCRIPTION)
def subscribe_me_api():
    data = _json_body()
    result = get_api().subscribe_me(
        g.actor.user_id,
        plan_id=data.get("plan_id"),
        plan_type=data.get("plan_type"),
        payment_method=data.get("payment_method"),
    )
    return jsonify(asdict(result)), 201


@app.route("/api/subscriptions/my/<int:subscription_id>/<action>", methods=["PATCH"])
@requires(Action.MANAGE_OWN_SUBSCRIPTION)
def change_my_subscription_status_api(subscription_id: int, action: str):
    app_api = get_api()
    handlers = {
        "pause": app_api.pause_subscription,
        "resume": app_api.resume_subscription,
        "cancel": app_api.cancel_subscription,
    }
    if action not in handlers:
        return jsonify({"error": f"Unknown action '{action}'."}), 404
    subscription = handlers[action](subscription_id, acting_member_id=_my_member_id())
    return jsonify(asdict(subscription))


# --- Payments ---


@app.route("/api/payments", methods=["GET"])
@requires(Action.VIEW_PAYMENTS)
def get_all_payments_api():
    return jsonify([asdict(p) for p in get_api().get_payments()])


@app.route("/api/payments/member/<int:member_id>", methods=["GET"])
@requires(Action.VIEW_PAYMENTS)
def get_member_payments_api(member_id: int):
    return jsonify([asdict(p) for p in get_api().get_payments(member_id)])


@app.route("/api/payments/my", methods=["GET"])
@requires(Action.VIEW_OWN_PAYMENTS)
def get_my_payments_api():
    return jsonify([asdict(p) for p in get_api().get_my_payments(g.actor.user_id)])


@app.route("/api/payments/create", methods=["POST"])
@requires(Action.MANAGE_OWN_SUBSCRIPTION)
def create_payment_api():
    data = _json_body()
    result = get_api().pay_for_plan(g.actor.user_id, data.get("plan_id"), data.get("payment_method"))
    return jsonify(asdict(result)), 201


# --- Members ---


@app.route("/api/members", methods=["GET"])
@requires(Action.VIEW_MEMBERS)
def get_all_members_api():
    return jsonify([asdict(m) for m in get_api().get_all_members_for_view()])


@app.route("/api/members", methods=["POST"])
@requires(Action.MANAGE_MEMBERS)
def create_member_api():
    data = _json_body()
    required_fields = ("email", "password", "first_name", "last_name")
    for field in required_fields:
        if not data.get(field):
            return jsonify({"error": f"Missing required field: {field}"}), 400
    profile = data.get("personal_info") or {}
    if not isinstance(profile, dict):
        return jsonify({"error": "personal_info must be an object."}), 400
    member = get_api().create_member(
        data["email"],
        data["password"],
        data["first_name"],
        data["last_name"],
        phone=data.get("phone"),
        profile=profile,
    )
    return jsonify(asdict(member)), 201


@app.route("/api/members/<int:member_id>", methods=["GET"])
@requires(Action.VIEW_MEMBERS)
def get_member_api(member_id: int):
    return jsonify(asdict(get_api().get_member(member_id)))


@app.route("/api/members/<int:member_id>", methods=["PUT"])
@requires(Action.MANAGE_MEMBERS)
def update_member_api(member_id: int):
    data = _json_body()
    profile = data.get("personal_info", data)
    if not isinstance(profile, dict):
        return jsonify({"error": "personal_info must be an object."}), 400
    return jsonify(asdict(get_api().update_member_profile(member_id, profile)))


@app.route("/api/members/<int:member_id>", methods=["DELETE"])
@requires(Action.MANAGE_MEMBERS)
def delete_member_api(member_id: int):
    get_api().delete_member(member_id)
    return jsonify({"message": "Member deleted successfully"})


# --- Trainers ---


@app.route("/api/trainers", methods=["GET"])
@requires(Action.VIEW_TRAINERS)
def get_all_trainers_api():
    return jsonify([asdict(t) for t in get_api().get_all_trainers()])


@app.route("/api/trainers/me", methods=["GET"])
@requires(Action.VIEW_OWN_TRAINER_PROFILE)
def get_my_trainer_profile_api():
    return jsonify(asdict(get_api().get_my_trainer_profile(g.actor.user_id)))


@app.route("/api/trainers/my-members", methods=["GET"])
@requires(Action.VIEW_OWN_ROSTER)
def get_my_members_api():
    return jsonify([asdict(m) for m in get_api().get_my_members(g.actor.user_id)])


@app.route("/api/trainers/<int:trainer_id>", methods=["GET"])
@requires(Action.VIEW_TRAINERS)
def get_trainer_api(trainer_id: int):
    return jsonify(asdict(get_api().get_trainer_view(trainer_id)))


@app.route("/api/trainers/<int:trainer_id>", methods=["PUT"])
@requires(Action.MANAGE_TRAINERS)
def update_trainer_api(trainer_id: int):
    return jsonify(asdict(get_api().update_trainer(trainer_id, _json_body())))


@app.route("/api/trainers", methods=["POST"])
@requires(Action.MANAGE_TRAINERS)
def create_trainer_api():
    data = _json_body()
    for field in ("email", "password", "first_name", "last_name"):
        if not data.get(field):
            return jsonify({"error": f"Missing required field: {field}"}), 400
    trainer = get_api().create_trainer(
        data["email"],
        data["password"],
        data["first_name"],
        data["last_name"],
        phone=data.get("phone"),
        specialization=data.get("specialization"),
        experience=data.get("experience", 0),
        certifications=data.get("certifications"),
    )
    return jsonify(asdict(trainer)), 201


def _roster_ids(data: dict):
    trainer_id, member_id = data.get("trainer_id"), data.get("member_id")
    if not all(isinstance(v, int) and not isinstance(v, bool) for v in (trainer_id, member_id)):
        raise ValidationError("trainer_id and member_id are required integers.")
    return trainer_id, member_id


@app.route("/api/trainers/assign", methods=["POST"])
@requires(Action.MANAGE_TRAINERS)
def assign_member_api():
    trainer_id, member_id = _roster_ids(_json_body())
    member = get_api().assign_trainer(trainer_id, member_id)
    return jsonify({"message": "Member assigned successfully", "member": asdict(member)})


@app.route("/api/trainers/unassign", methods=["POST"])
@requires(Action.MANAGE_TRAINERS)
def unassign_member_api():
    trainer_id, member_id = _roster_ids(_json_body())
    member = get_api().unassign_trainer(trainer_id, member_id)
    return jsonify({"message": "Member unassigned successfully", "member": asdict(member)})


@app.route("/api/trainers/<int:trainer_id>/members", methods=["GET"])
@requires(Action.VIEW_ASSIGNED_MEMBERS)
def get_trainer_members_api(trainer_id: int):
    return jsonify([asdict(m) for m in get_api().get_trainer_members(trainer_id)])


@app.route("/api/trainers/my-subscriptions", methods=["GET"])
@requires(Action.VIEW_OWN_ROSTER)
def get_my_assigned_subscriptions_api():
    subscriptions = get_api().get_my_assigned_subscriptions(g.actor.user_id)
    return jsonify([asdict(s) for s in subscriptions])


@app.route("/api/trainers/<int:trainer_id>", methods=["DELETE"])
@requires(Action.MANAGE_TRAINERS)
def delete_trainer_api(trainer_id: int):
    get_api().delete_trainer(trainer_id)
    return jsonify({"message": "Trainer deleted successfully"})


# --- Workout schedules ---


@app.route("/api/schedules", methods=["POST"])
@requires(Action.MANAGE_SCHEDULES)
def create_schedule_api():
    data = _json_body()
    for field in ("member_id", "start_date", "end_date", "routines"):
        if data.get(field) is None:
            return jsonify({"error": f"Missing required field: {field}"}), 400
    _, acting_trainer_id = _schedule_scope()
    schedule = get_api().create_schedule(
        data["member_id"],
        data["start_date"],
        data["end_date"],
        data["routines"],
        trainer_id=data.get("trainer_id"),
        acting_trainer_id=acting_trainer_id,
    )
    return jsonify(asdict(schedule)), 201


@app.route("/api/schedules/my", methods=["GET"])
@requires(Action.VIEW_OWN_SCHEDULE)
def get_my_schedules_api():
    return jsonify([asdict(s) for s in get_api().get_my_schedules(g.actor.user_id)])


@app.route("/api/schedules/member/<int:member_id>", methods=["GET"])
@requires(Action.VIEW_SCHEDULES)
def get_member_schedules_api(member_id: int):
    acting_member_id, _ = _schedule_scope()
    schedules = get_api().get_member_schedules(member_id, acting_member_id=acting_member_id)
    return jsonify([asdict(s) for s in schedules])


@app.route("/api/schedules/member/<int:member_id>/stats", methods=["GET"])
@requires(Action.VIEW_SCHEDULES)
def get_member_progress_stats_api(member_id: int):
    acting_member_id, _ = _schedule_scope()
    return jsonify(get_api().member_progress_stats(member_id, acting_member_id=acting_member_id))


@app.route("/api/schedules/<int:schedule_id>", methods=["PUT"])
@requires(Action.MANAGE_SCHEDULES)
def update_schedule_api(schedule_id: int):
    _, acting_trainer_id = _schedule_scope()
    schedule = get_api().update_schedule(schedule_id, _json_body(), acting_trainer_id=acting_trainer_id)
    return jsonify(asdict(schedule))


@app.route("/api/schedules/<int:schedule_id>/status", methods=["PATCH"])
@requires(Action.UPDATE_EXERCISE_STATUS)
def update_exercise_status_api(schedule_id: int):
    data = _json_body()
    acting_member_id, acting_trainer_id = _schedule_scope()
    schedule = get_api().set_exercise_status(
        schedule_id,
        data.get("day"),
        data.get("exercise_index"),
        data.get("completed"),
        acting_member_id=acting_member_id,
        acting_trainer_id=acting_trainer_id,
    )
    return jsonify(asdict(schedule))


# --- Reports and maintenance ---


@app.route("/api/reports/revenue", methods=["GET"])
@requires(Action.VIEW_REPORTS)
def get_revenue_report_api():
    start_date = request.args.get("start_date")
    end_date = request.args.get("end_date")
    if not start_date or not end_date:
        return jsonify({"error": "Missing 'start_date' or 'end_date'."}), 400
    return jsonify(get_api().generate_revenue_report(start_date, end_date))


@app.route("/api/maintenance/sweep", methods=["POST"])
@requires(Action.RUN_MAINTENANCE)
def sweep_expired_api():
    return jsonify(get_api().sweep_expired())
