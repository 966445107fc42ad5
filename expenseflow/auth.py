from functools import wraps

from flask import abort
from flask_login import LoginManager, current_user

from expenseflow.model import Role, User, db

login_manager = LoginManager()


@login_manager.user_loader
def load_user(user_id):
    user = db.session.get(User, int(user_id))
    if user is None or not user.is_active:
        return None
    return user


@login_manager.unauthorized_handler
def unauthorized():
    abort(401)


def is_admin(user):
    return user.role == Role.ADMIN.value


def can_approve(user):
    if is_admin(user):
        return True
    return user.role == Role.MANAGER.value and bool(user.is_manager_approver)


# Decorators
def role_required(*roles):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                abort(401)
            if current_user.role not in roles:
                abort(403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


def approver_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            abort(401)
        if not can_approve(current_user):
            abort(403, 'You do not have permission to approve expenses.')
        return f(*args, **kwargs)
    return decorated_function
