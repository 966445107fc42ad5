import logging
import math
import re
from datetime import datetime

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy import case, func, or_

from expenseflow import workflow
from expenseflow.auth import approver_required, can_approve, is_admin, login_manager, role_required
from expenseflow.config import Config
from expenseflow.currency import (POPULAR_CURRENCIES, CurrencyConverter, RateCache, get_countries,
                                  get_currency_for_country)
from expenseflow.errors import (ConversionFailure, Forbidden, InvalidState, NotFound, ValidationError,
                                register_error_handlers)
from expenseflow.model import (ACTIONS, APPROVAL_TYPES, ROLES, STATUSES, ApprovalHistory, ApprovalRule, Company,
                               Expense, Role, RuleApprover, Status, User, db)

api = Blueprint('api', __name__)

CURRENCY_RE = re.compile(r'^[A-Za-z]{3}$')
MAX_TEXT_LENGTH = 500
MIN_PASSWORD_LENGTH = 6


def create_app(test_config=None, converter=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if isinstance(test_config, dict):
        app.config.from_mapping(test_config)
    elif test_config is not None:
        app.config.from_object(test_config)

    logging.basicConfig(format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    logging.getLogger('expenseflow').setLevel(app.config['LOG_LEVEL'])
    app.logger.setLevel(app.config['LOG_LEVEL'])

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)
    CORS(app, resources={r"/*": {"origins": app.config['CORS_ORIGINS']}}, supports_credentials=True)

    if converter is None:
        converter = CurrencyConverter(
            app.config['EXCHANGE_RATE_API'],
            cache=RateCache(ttl=app.config['RATE_CACHE_TTL']),
            timeout=app.config['HTTP_TIMEOUT'],
        )
    app.extensions['currency_converter'] = converter

    register_error_handlers(app)
    app.register_blueprint(api)
    return app


# Helper functions
def get_json():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def get_converter():
    return current_app.extensions['currency_converter']


def parse_amount(value, field='amount'):
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be a positive number')
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a positive number')
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(f'{field} must be a positive number')
    return amount


def parse_currency(value, field='currency'):
    if not isinstance(value, str) or not CURRENCY_RE.match(value):
        raise ValidationError(f'{field} must be a 3-character ISO code')
    return value.upper()


def parse_date(value, field):
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid {field} format (YYYY-MM-DD)')


def parse_int(value, field, minimum=None):
    if isinstance(value, bool):
        raise ValidationError(f'{field} must be an integer')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} must be at least {minimum}')
    return number


def parse_comment(data):
    comment = data.get('comment') or ''
    if not isinstance(comment, str) or len(comment) > MAX_TEXT_LENGTH:
        raise ValidationError(f'Comment must be a string of at most {MAX_TEXT_LENGTH} characters')
    return comment.strip()


def pagination_args():
    page = parse_int(request.args.get('page', 1), 'page', minimum=1)
    limit = parse_int(request.args.get('limit', current_app.config['DEFAULT_PAGE_SIZE']), 'limit', minimum=1)
    return page, min(limit, current_app.config['MAX_PAGE_SIZE'])


def paginated(query, key, serialize):
    page, limit = pagination_args()
    result = query.paginate(page=page, per_page=limit, error_out=False)
    return jsonify({
        'status': 'success',
        'results': len(result.items),
        'total': result.total,
        'current_page': page,
        'total_pages': result.pages,
        'data': {key: [serialize(item) for item in result.items]},
    })


def company_user(user_id, field='user_id'):
    user = db.session.get(User, user_id) if user_id is not None else None
    if user is None or user.company_id != current_user.company_id:
        raise ValidationError(f'Invalid {field}')
    return user


def rule_approver(user_id, field='user_id'):
    user = company_user(user_id, field)
    if not user.is_active or not can_approve(user):
        raise ValidationError(f'User {user.id} cannot approve expenses')
    return user


def get_company_user(user_id):
    user = db.session.get(User, user_id)
    if user is None or user.company_id != current_user.company_id:
        raise NotFound('User not found')
    return user


def get_expense(expense_id):
    expense = db.session.get(Expense, expense_id)
    if expense is None or expense.company_id != current_user.company_id:
        raise NotFound('Expense not found')
    return expense


def get_rule(rule_id):
    rule = db.session.get(ApprovalRule, rule_id)
    if rule is None or rule.company_id != current_user.company_id:
        raise NotFound('Approval rule not found')
    return rule


def team_ids(manager):
    return [sub.id for sub in manager.direct_subordinates]


def can_view_expense(user, expense):
    if expense.company_id != user.company_id:
        return False
    if is_admin(user) or expense.employee_id == user.id or expense.current_approver_id == user.id:
        return True
    if user.role == Role.MANAGER.value and expense.employee.manager_id == user.id:
        return True
    return any(h.approver_id == user.id for h in expense.history)


def visible_expenses(user):
    query = Expense.query.filter(Expense.company_id == user.company_id)
    if user.role == Role.EMPLOYEE.value:
        return query.filter(Expense.employee_id == user.id)
    if user.role == Role.MANAGER.value:
        # Direct subordinates only
        return query.filter(Expense.employee_id.in_(team_ids(user)))
    return query


def parse_expense(data, expense=None):
    """Validate an expense payload; on edit, omitted fields keep their values."""
    def field(name, current):
        if name in data:
            return data[name]
        if expense is not None:
            return current
        raise ValidationError(f'Missing field: {name}')

    amount = parse_amount(field('amount', expense and expense.amount))
    currency = parse_currency(field('currency', expense and expense.currency))
    category = field('category', expense and expense.category)
    if not isinstance(category, str) or not category.strip():
        raise ValidationError('Category is required')
    description = field('description', expense and expense.description)
    if not isinstance(description, str) or not description.strip():
        raise ValidationError('Description is required')
    if len(description) > MAX_TEXT_LENGTH:
        raise ValidationError(f'Description cannot exceed {MAX_TEXT_LENGTH} characters')
    if 'expense_date' in data or expense is None:
        expense_date = parse_date(field('expense_date', None), 'expense_date')
    else:
        expense_date = expense.expense_date
    receipt_url = data.get('receipt_url', expense.receipt_url if expense else None)
    return {
        'amount': amount,
        'currency': currency,
        'category': category.strip(),
        'description': description.strip(),
        'expense_date': expense_date,
        'receipt_url': receipt_url,
    }


def convert_to_company_currency(fields, company):
    conversion = get_converter().convert(fields['amount'], fields['currency'], company.currency)
    if conversion.converted_amount > company.max_expense_amount:
        raise ValidationError(
            f'Expense amount exceeds company limit of {company.max_expense_amount} {company.currency}')
    fields['amount_in_company_currency'] = conversion.converted_amount
    fields['exchange_rate'] = conversion.exchange_rate
    return fields


def parse_rule(data, rule=None):
    """Validate an approval-rule payload shaped like ApprovalRule.to_dict()."""
    values = {}
    if 'name' in data or rule is None:
        name = data.get('name')
        if not isinstance(name, str) or not name.strip() or len(name) > 100:
            raise ValidationError('Rule name is required (at most 100 characters)')
        values['name'] = name.strip()
    if 'description' in data:
        values['description'] = data['description']
    if 'approval_type' in data or rule is None:
        approval_type = data.get('approval_type', 'sequential')
        if approval_type not in APPROVAL_TYPES:
            raise ValidationError(f'approval_type must be one of {", ".join(APPROVAL_TYPES)}')
        values['approval_type'] = approval_type
    if 'priority' in data:
        values['priority'] = parse_int(data['priority'], 'priority')
    if 'is_active' in data:
        values['is_active'] = bool(data['is_active'])

    conditions = data.get('conditions') or {}
    if 'amount_threshold' in conditions:
        threshold = conditions['amount_threshold']
        if threshold is not None:
            try:
                threshold = float(threshold)
            except (TypeError, ValueError):
                raise ValidationError('amount_threshold must be a number')
            if threshold < 0:
                raise ValidationError('amount_threshold cannot be negative')
        values['amount_threshold'] = threshold
    for key in ('categories', 'departments'):
        if key in conditions:
            items = conditions[key] or []
            if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
                raise ValidationError(f'{key} must be a list of strings')
            values[key] = [i.strip() for i in items]

    settings = data.get('approval_settings') or {}
    if 'percentage_required' in settings:
        percentage = settings['percentage_required']
        if percentage is not None:
            try:
                percentage = float(percentage)
            except (TypeError, ValueError):
                raise ValidationError('percentage_required must be a number')
            if not 0 <= percentage <= 100:
                raise ValidationError('percentage_required must be between 0 and 100')
        values['percentage_required'] = percentage
    if 'specific_approver_id' in settings:
        specific = settings['specific_approver_id']
        values['specific_approver_id'] = (
            rule_approver(specific, 'specific_approver_id').id if specific is not None else None)
    if 'allow_manager_override' in settings:
        values['allow_manager_override'] = bool(settings['allow_manager_override'])
    if 'auto_approve_after_days' in settings:
        days = settings['auto_approve_after_days']
        values['auto_approve_after_days'] = (
            parse_int(days, 'auto_approve_after_days', minimum=1) if days is not None else None)

    approvers = None
    if 'approvers' in data:
        if not isinstance(data['approvers'], list):
            raise ValidationError('approvers must be a list')
        approvers = []
        for entry in data['approvers']:
            if not isinstance(entry, dict):
                raise ValidationError('Each approver must be an object')
            user = rule_approver(entry.get('user_id'))
            approvers.append(RuleApprover(
                user_id=user.id,
                step=parse_int(entry.get('step'), 'step', minimum=1),
                is_required=bool(entry.get('is_required', True)),
                can_override=bool(entry.get('can_override', False)),
            ))
    return values, approvers


# ==================== AUTH ====================

@api.route('/signup', methods=['POST'])
def signup():
    data = get_json()
    email = data.get('email')
    password = data.get('password')
    company_name = data.get('company_name')
    country_name = data.get('country')
    if not all([email, password, company_name, country_name]):
        raise ValidationError('Missing fields')
    if User.query.filter_by(email=email).first():
        raise ValidationError('Email exists')
    if data.get('currency'):
        currency = parse_currency(data['currency'])
    else:
        currency = get_currency_for_country(country_name, current_app.config['REST_COUNTRIES_API'],
                                            timeout=current_app.config['HTTP_TIMEOUT'])
    if not currency:
        raise ValidationError('Invalid country or no currency')
    company = Company(name=company_name, country=country_name, currency=currency,
                      max_expense_amount=current_app.config['DEFAULT_MAX_EXPENSE_AMOUNT'])
    db.session.add(company)
    db.session.flush()
    user = User(email=email, name=data.get('name') or '', role=Role.ADMIN.value, company_id=company.id)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    login_user(user)
    current_app.logger.info('Company %s created with admin %s', company.id, user.id)
    return jsonify({'message': 'Signup successful', 'user': user.to_dict(), 'company': company.to_dict()}), 201


@api.route('/login', methods=['POST'])
def login():
    data = get_json()
    user = User.query.filter_by(email=data.get('email')).first()
    if user and user.is_active and user.check_password(data.get('password') or ''):
        login_user(user)
        return jsonify({'message': 'Login successful', 'user': user.to_dict()})
    return jsonify({'status': 'error', 'kind': 'unauthorized', 'message': 'Invalid credentials'}), 401


@api.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'message': 'Logged out'})


@api.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({'user': current_user.to_dict(), 'company': current_user.company.to_dict()})


@api.route('/profile', methods=['PUT'])
@login_required
def update_profile():
    data = get_json()
    email = data.get('email')
    name = data.get('name')
    if not all(value is None or isinstance(value, str) for value in (email, name)):
        raise ValidationError('Name and email must be strings')
    if email and email != current_user.email:
        if User.query.filter_by(email=email).first():
            raise ValidationError('Email is already taken')
        current_user.email = email
    if name:
        current_user.name = name
    db.session.commit()
    return jsonify({'status': 'success', 'data': {'user': current_user.to_dict()}})


@api.route('/change-password', methods=['PUT'])
@login_required
def change_password():
    data = get_json()
    current_password = data.get('current_password')
    new_password = data.get('new_password')
    if not all(isinstance(p, str) and p for p in (current_password, new_password)):
        raise ValidationError('Current password and new password are required')
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f'New password must be at least {MIN_PASSWORD_LENGTH} characters long')
    if not current_user.check_password(current_password):
        raise ValidationError('Current password is incorrect')
    current_user.set_password(new_password)
    db.session.commit()
    current_app.logger.info('User %s changed their password', current_user.id)
    return jsonify({'status': 'success', 'message': 'Password changed successfully'})


# ==================== USERS ====================

@api.route('/users', methods=['GET'])
@login_required
@role_required('admin')
def list_users():
    query = User.query.filter_by(company_id=current_user.company_id).order_by(User.id)
    return paginated(query, 'users', User.to_dict)


@api.route('/users', methods=['POST'])
@login_required
@role_required('admin')
def create_user():
    data = get_json()
    email = data.get('email')
    password = data.get('password')
    role = data.get('role')
    if not all([email, password, role]):
        raise ValidationError('Missing fields')
    if role not in ROLES:
        raise ValidationError('Invalid role')
    if User.query.filter_by(email=email).first():
        raise ValidationError('Email exists')
    manager_id = data.get('manager_id')
    if manager_id is not None:
        manager_id = company_user(manager_id, 'manager').id
    user = User(
        email=email,
        name=data.get('name') or '',
        role=role,
        company_id=current_user.company_id,
        manager_id=manager_id,
        is_manager_approver=bool(data.get('is_manager_approver', False)),
    )
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return jsonify({'message': 'User created', 'user': user.to_dict()}), 201


@api.route('/users/<int:user_id>', methods=['PUT'])
@login_required
@role_required('admin')
def update_user(user_id):
    user = get_company_user(user_id)
    data = get_json()
    if 'name' in data:
        user.name = data['name'] or ''
    if 'role' in data:
        if data['role'] not in ROLES:
            raise ValidationError('Invalid role')
        user.role = data['role']
    if 'manager_id' in data:
        manager = company_user(data['manager_id'], 'manager') if data['manager_id'] else None
        if manager is not None and manager.id == user.id:
            raise ValidationError('A user cannot manage themselves')
        user.manager_id = manager.id if manager else None
    if 'is_manager_approver' in data:
        user.is_manager_approver = bool(data['is_manager_approver'])
    if 'is_active' in data:
        user.is_active = bool(data['is_active'])
    db.session.commit()
    return jsonify({'message': 'User updated', 'user': user.to_dict()})


@api.route('/users/<int:user_id>', methods=['GET'])
@login_required
def get_user(user_id):
    user = get_company_user(user_id)
    if not is_admin(current_user) and user.id != current_user.id:
        raise Forbidden()
    result = user.to_dict()
    result['manager'] = user.manager.summary() if user.manager else None
    return jsonify({'status': 'success', 'data': {'user': result}})


def has_workflow_records(user):
    queries = [
        Expense.query.filter(or_(Expense.employee_id == user.id, Expense.current_approver_id == user.id)),
        ApprovalHistory.query.filter_by(approver_id=user.id),
        RuleApprover.query.filter_by(user_id=user.id),
        ApprovalRule.query.filter_by(specific_approver_id=user.id),
    ]
    return any(query.first() is not None for query in queries)


@api.route('/users/<int:user_id>', methods=['DELETE'])
@login_required
@role_required('admin')
def delete_user(user_id):
    user = get_company_user(user_id)
    if user.id == current_user.id:
        raise ValidationError('Cannot delete your own account')
    if has_workflow_records(user):
        raise InvalidState('User has expense or approval records; deactivate the user instead')
    for report in user.direct_subordinates:
        report.manager_id = None
    db.session.delete(user)
    db.session.commit()
    current_app.logger.info('User %s deleted by admin %s', user_id, current_user.id)
    return jsonify({'status': 'success', 'message': 'User deleted successfully'})


@api.route('/users/team', methods=['GET'])
@login_required
@role_required('admin', 'manager')
def team_members():
    query = User.query.filter_by(company_id=current_user.company_id)
    if current_user.role == Role.MANAGER.value:
        # Managers see their direct reports only
        query = query.filter_by(manager_id=current_user.id)
    members = query.order_by(User.name, User.id).all()
    return jsonify({'status': 'success', 'results': len(members),
                    'data': {'team_members': [m.to_dict() for m in members]}})


@api.route('/users/managers', methods=['GET'])
@login_required
def list_managers():
    managers = (User.query
                .filter(User.company_id == current_user.company_id,
                        User.role.in_([Role.ADMIN.value, Role.MANAGER.value]),
                        User.is_active.is_(True))
                .order_by(User.name, User.id).all())
    return jsonify({'status': 'success', 'results': len(managers),
                    'data': {'managers': [dict(m.summary(), role=m.role) for m in managers]}})


# ==================== COMPANY ====================

@api.route('/company', methods=['GET'])
@login_required
def get_company():
    return jsonify({'company': current_user.company.to_dict()})


@api.route('/company/settings', methods=['PUT'])
@login_required
@role_required('admin')
def update_company_settings():
    data = get_json()
    company = current_user.company
    if 'max_expense_amount' in data:
        company.max_expense_amount = parse_amount(data['max_expense_amount'], 'max_expense_amount')
    if 'expense_categories' in data:
        categories = data['expense_categories']
        if not isinstance(categories, list) or not all(isinstance(c, str) and c.strip() for c in categories):
            raise ValidationError('expense_categories must be a list of non-empty strings')
        company.expense_categories = [c.strip() for c in categories]
    db.session.commit()
    return jsonify({'company': company.to_dict()})


@api.route('/company', methods=['PUT'])
@login_required
@role_required('admin')
def update_company():
    data = get_json()
    company = current_user.company
    if data.get('name'):
        if not isinstance(data['name'], str) or len(data['name']) > 100:
            raise ValidationError('Company name cannot exceed 100 characters')
        company.name = data['name'].strip()
    if data.get('country'):
        company.country = data['country']
    if data.get('currency'):
        # Amounts already converted keep the currency they were converted to
        company.currency = parse_currency(data['currency'])
    db.session.commit()
    current_app.logger.info('Company %s updated by admin %s', company.id, current_user.id)
    return jsonify({'company': company.to_dict()})


@api.route('/company/stats', methods=['GET'])
@login_required
@role_required('admin')
def company_stats():
    company_id = current_user.company_id
    users = User.query.filter(User.company_id == company_id).with_entities(
        func.count(User.id),
        func.sum(case((User.is_active.is_(True), 1), else_=0)),
        func.sum(case((User.role == Role.ADMIN.value, 1), else_=0)),
        func.sum(case((User.role == Role.MANAGER.value, 1), else_=0)),
        func.sum(case((User.role == Role.EMPLOYEE.value, 1), else_=0)),
    ).one()
    amount = Expense.amount_in_company_currency
    expenses = Expense.query.filter(Expense.company_id == company_id).with_entities(
        func.count(Expense.id),
        func.sum(case((Expense.status == Status.PENDING.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.APPROVED.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.REJECTED.value, 1), else_=0)),
        func.coalesce(func.sum(amount), 0),
        func.coalesce(func.avg(amount), 0),
        func.coalesce(func.max(amount), 0),
        func.coalesce(func.min(amount), 0),
    ).one()
    return jsonify({'status': 'success', 'data': {'stats': {
        'users': {
            'total': users[0],
            'active': users[1] or 0,
            'by_role': {'admin': users[2] or 0, 'manager': users[3] or 0, 'employee': users[4] or 0},
        },
        'expenses': {
            'total': expenses[0],
            'pending': expenses[1] or 0,
            'approved': expenses[2] or 0,
            'rejected': expenses[3] or 0,
            'amounts': {
                'total_amount': expenses[4],
                'avg_amount': expenses[5],
                'max_amount': expenses[6],
                'min_amount': expenses[7],
            },
        },
    }}})


# ==================== APPROVAL RULES ====================

@api.route('/approval-rules', methods=['GET'])
@login_required
@role_required('admin')
def list_rules():
    rules = (ApprovalRule.query.filter_by(company_id=current_user.company_id)
             .order_by(ApprovalRule.priority.desc(), ApprovalRule.id).all())
    return jsonify({'rules': [r.to_dict() for r in rules]})


@api.route('/approval-rules', methods=['POST'])
@login_required
@role_required('admin')
def create_rule():
    values, approvers = parse_rule(get_json())
    rule = ApprovalRule(company_id=current_user.company_id, approvers=approvers or [], **values)
    db.session.add(rule)
    db.session.commit()
    current_app.logger.info('Approval rule %s created for company %s', rule.id, rule.company_id)
    return jsonify({'rule': rule.to_dict()}), 201


@api.route('/approval-rules/<int:rule_id>', methods=['GET'])
@login_required
@role_required('admin')
def get_rule_detail(rule_id):
    return jsonify({'rule': get_rule(rule_id).to_dict()})


@api.route('/approval-rules/<int:rule_id>', methods=['PUT'])
@login_required
@role_required('admin')
def update_rule(rule_id):
    rule = get_rule(rule_id)
    values, approvers = parse_rule(get_json(), rule)
    for key, value in values.items():
        setattr(rule, key, value)
    if approvers is not None:
        rule.approvers = approvers
    db.session.commit()
    return jsonify({'rule': rule.to_dict()})


@api.route('/approval-rules/<int:rule_id>', methods=['DELETE'])
@login_required
@role_required('admin')
def delete_rule(rule_id):
    db.session.delete(get_rule(rule_id))
    db.session.commit()
    return jsonify({'message': 'Approval rule deleted'})


# ==================== EXPENSES ====================

@api.route('/expenses', methods=['POST'])
@login_required
def submit_expense():
    company = current_user.company
    fields = convert_to_company_currency(parse_expense(get_json()), company)
    expense = Expense(employee_id=current_user.id, company_id=company.id, **fields)
    db.session.add(expense)
    db.session.flush()
    workflow.initialize_workflow(expense)
    return jsonify({'status': 'success', 'data': {'expense': expense.to_dict()}}), 201


@api.route('/expenses', methods=['GET'])
@login_required
def list_expenses():
    query = visible_expenses(current_user)
    status = request.args.get('status')
    if status:
        if status not in STATUSES:
            raise ValidationError('Invalid status')
        query = query.filter(Expense.status == status)
    if request.args.get('category'):
        query = query.filter(Expense.category == request.args['category'])
    if request.args.get('start_date'):
        query = query.filter(Expense.expense_date >= parse_date(request.args['start_date'], 'start_date'))
    if request.args.get('end_date'):
        query = query.filter(Expense.expense_date <= parse_date(request.args['end_date'], 'end_date'))
    query = query.order_by(Expense.created_at.desc(), Expense.id.desc())
    return paginated(query, 'expenses', Expense.to_dict)


@api.route('/expenses/stats', methods=['GET'])
@login_required
def expense_stats():
    row = visible_expenses(current_user).with_entities(
        func.count(Expense.id),
        func.coalesce(func.sum(Expense.amount_in_company_currency), 0),
        func.coalesce(func.avg(Expense.amount_in_company_currency), 0),
        func.sum(case((Expense.status == Status.PENDING.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.APPROVED.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.REJECTED.value, 1), else_=0)),
    ).one()
    return jsonify({'status': 'success', 'data': {'stats': {
        'total_expenses': row[0],
        'total_amount': row[1],
        'avg_amount': row[2],
        'pending_count': row[3] or 0,
        'approved_count': row[4] or 0,
        'rejected_count': row[5] or 0,
    }}})


@api.route('/expenses/<int:expense_id>', methods=['GET'])
@login_required
def get_expense_details(expense_id):
    expense = get_expense(expense_id)
    if not can_view_expense(current_user, expense):
        raise Forbidden()
    return jsonify({'status': 'success', 'data': {'expense': expense.to_dict(include_history=True)}})


@api.route('/expenses/<int:expense_id>', methods=['PUT'])
@login_required
def update_expense(expense_id):
    expense = get_expense(expense_id)
    if expense.employee_id != current_user.id and not is_admin(current_user):
        raise Forbidden()
    if expense.status != Status.PENDING.value:
        raise InvalidState('Cannot update expense that is not pending')
    fields = convert_to_company_currency(parse_expense(get_json(), expense), current_user.company)
    workflow.revise_expense(expense, fields)
    return jsonify({'status': 'success', 'data': {'expense': expense.to_dict()}})


@api.route('/expenses/<int:expense_id>', methods=['DELETE'])
@login_required
def delete_expense(expense_id):
    expense = get_expense(expense_id)
    if expense.employee_id != current_user.id and not is_admin(current_user):
        raise Forbidden()
    if expense.status != Status.PENDING.value:
        raise InvalidState('Cannot delete expense that is not pending')
    workflow.withdraw_expense(expense)
    return jsonify({'status': 'success', 'message': 'Expense deleted successfully'})


# ==================== APPROVALS ====================

@api.route('/approvals/pending', methods=['GET'])
@approver_required
def pending_approvals():
    query = (Expense.query
             .filter_by(company_id=current_user.company_id, status=Status.PENDING.value,
                        current_approver_id=current_user.id)
             .order_by(Expense.created_at.desc(), Expense.id.desc()))
    return paginated(query, 'expenses', Expense.to_dict)


@api.route('/approvals/stats', methods=['GET'])
@approver_required
def approval_stats():
    query = Expense.query.filter(Expense.company_id == current_user.company_id)
    if not is_admin(current_user):
        decided = db.select(ApprovalHistory.expense_id).where(ApprovalHistory.approver_id == current_user.id)
        query = query.filter(or_(Expense.current_approver_id == current_user.id, Expense.id.in_(decided)))
    row = query.with_entities(
        func.sum(case((Expense.status == Status.PENDING.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.APPROVED.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.REJECTED.value, 1), else_=0)),
        func.sum(case((Expense.status == Status.APPROVED.value, Expense.amount_in_company_currency), else_=0)),
    ).one()
    return jsonify({'status': 'success', 'data': {'stats': {
        'pending_count': row[0] or 0,
        'approved_count': row[1] or 0,
        'rejected_count': row[2] or 0,
        'total_amount': row[3] or 0,
    }}})


@api.route('/approvals/<int:expense_id>', methods=['PUT'])
@approver_required
def process_approval(expense_id):
    data = get_json()
    action = data.get('action')
    if action not in ACTIONS:
        raise ValidationError('Action must be "approved" or "rejected"')
    expense = get_expense(expense_id)
    workflow.record_decision(expense, current_user.id, action, parse_comment(data))
    return jsonify({'status': 'success', 'data': {'expense': expense.to_dict(include_history=True)}})


@api.route('/approvals/<int:expense_id>/override', methods=['PUT'])
@login_required
def override_approval(expense_id):
    data = get_json()
    expense = get_expense(expense_id)
    workflow.override(expense, current_user, data.get('action'), parse_comment(data))
    return jsonify({'status': 'success', 'data': {'expense': expense.to_dict(include_history=True)}})


@api.route('/approvals/<int:expense_id>/history', methods=['GET'])
@login_required
def approval_history(expense_id):
    expense = get_expense(expense_id)
    if not can_view_expense(current_user, expense):
        raise Forbidden()
    return jsonify({'status': 'success', 'data': {
        'history': [h.to_dict() for h in expense.history],
        'status': expense.status,
    }})


# ==================== CURRENCIES ====================

@api.route('/currencies/convert', methods=['GET'])
@login_required
def convert_currency():
    from_currency = parse_currency(request.args.get('from'), 'from')
    to_currency = parse_currency(request.args.get('to'), 'to')
    amount = parse_amount(request.args.get('amount'))
    conversion = get_converter().convert(amount, from_currency, to_currency)
    return jsonify({
        'from_currency': from_currency,
        'to_currency': to_currency,
        'original_amount': amount,
        'converted_amount': conversion.converted_amount,
        'exchange_rate': conversion.exchange_rate,
    })


@api.route('/currencies/rate/<from_currency>/<to_currency>', methods=['GET'])
@login_required
def exchange_rate(from_currency, to_currency):
    from_currency = parse_currency(from_currency, 'from')
    to_currency = parse_currency(to_currency, 'to')
    rate = get_converter().convert(1, from_currency, to_currency).exchange_rate
    return jsonify({'from_currency': from_currency, 'to_currency': to_currency, 'exchange_rate': rate})


@api.route('/currencies/rates', methods=['POST'])
@login_required
def exchange_rates():
    data = get_json()
    base = parse_currency(data.get('base_currency'), 'base_currency')
    targets = data.get('target_currencies')
    if not isinstance(targets, list):
        raise ValidationError('target_currencies must be a list')
    converter = get_converter()
    rates = {}
    for target in targets:
        if not isinstance(target, str) or not CURRENCY_RE.match(target):
            continue
        target = target.upper()
        try:
            rates[target] = converter.convert(1, base, target).exchange_rate
        except ConversionFailure as e:
            current_app.logger.warning('No rate for %s->%s: %s', base, target, e.message)
            rates[target] = None
    return jsonify({'status': 'success', 'data': {'base_currency': base, 'rates': rates}})


@api.route('/currencies/countries', methods=['GET'])
@login_required
def list_countries():
    countries = get_countries(current_app.config['COUNTRIES_LIST_API'],
                              timeout=current_app.config['HTTP_TIMEOUT'])
    return jsonify({'status': 'success', 'results': len(countries), 'data': {'countries': countries}})


@api.route('/currencies/popular', methods=['GET'])
@login_required
def popular_currencies():
    return jsonify({'status': 'success', 'results': len(POPULAR_CURRENCIES),
                    'data': {'currencies': POPULAR_CURRENCIES}})


@api.route('/health', methods=['GET'])
def health_check():
    return jsonify({'status': 'healthy', 'message': 'Expense approval API is running'})


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
    app.run(debug=True, port=5000)
