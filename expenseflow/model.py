# model.py
from datetime import datetime, timezone
from enum import Enum

from flask import current_app
from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import check_password_hash, generate_password_hash

db = SQLAlchemy()


def utcnow():
    return datetime.now(timezone.utc)


def isoformat(value):
    return value.isoformat() if value else None


class Role(Enum):
    ADMIN = 'admin'
    MANAGER = 'manager'
    EMPLOYEE = 'employee'


class Status(Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    # Reserved: never assigned by the approval engine
    PARTIALLY_APPROVED = 'partially_approved'


class ApprovalType(Enum):
    SEQUENTIAL = 'sequential'
    PARALLEL = 'parallel'
    PERCENTAGE = 'percentage'
    SPECIFIC_APPROVER = 'specific_approver'
    HYBRID = 'hybrid'


ROLES = [r.value for r in Role]
STATUSES = [s.value for s in Status]
APPROVAL_TYPES = [t.value for t in ApprovalType]
ACTIONS = [Status.APPROVED.value, Status.REJECTED.value]
EXPENSE_CATEGORIES = ['Travel', 'Meals', 'Accommodation', 'Transportation', 'Office Supplies', 'Other']


class Company(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(100), nullable=False)
    country = db.Column(db.String(100), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    max_expense_amount = db.Column(db.Float, nullable=False, default=10000)
    expense_categories = db.Column(db.JSON, nullable=False, default=lambda: list(EXPENSE_CATEGORIES))
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'country': self.country,
            'currency': self.currency,
            'max_expense_amount': self.max_expense_amount,
            'expense_categories': list(self.expense_categories or []),
        }


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    name = db.Column(db.String(100), nullable=False, default='')
    role = db.Column(db.Enum(*ROLES, name='user_role'), nullable=False, default=Role.EMPLOYEE.value)
    manager_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    is_manager_approver = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    company = db.relationship('Company', backref='users')
    manager = db.relationship('User', remote_side=[id], backref='direct_subordinates')

    def set_password(self, password):
        method = current_app.config.get('PASSWORD_HASH_METHOD', 'pbkdf2:sha256')
        self.password_hash = generate_password_hash(password, method=method)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
            'company_id': self.company_id,
            'manager_id': self.manager_id,
            'is_manager_approver': self.is_manager_approver,
            'is_active': self.is_active,
        }

    def summary(self):
        return {'id': self.id, 'name': self.name, 'email': self.email}


class ApprovalRule(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    # NULL means the rule applies at any amount
    amount_threshold = db.Column(db.Float, default=0)
    categories = db.Column(db.JSON, default=list)
    departments = db.Column(db.JSON, default=list)
    approval_type = db.Column(db.Enum(*APPROVAL_TYPES, name='approval_type'), nullable=False,
                              default=ApprovalType.SEQUENTIAL.value)
    # NULL falls back to the policy's own default
    percentage_required = db.Column(db.Float)
    specific_approver_id = db.Column(db.Integer, db.ForeignKey('user.id'))
    allow_manager_override = db.Column(db.Boolean, nullable=False, default=False)
    auto_approve_after_days = db.Column(db.Integer)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)
    company = db.relationship('Company', backref='approval_rules')
    specific_approver = db.relationship('User')
    approvers = db.relationship('RuleApprover', backref='rule', cascade='all, delete-orphan',
                                order_by='RuleApprover.step')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'conditions': {
                'amount_threshold': self.amount_threshold,
                'categories': self.categories or [],
                'departments': self.departments or [],
            },
            'approvers': [a.to_dict() for a in self.approvers],
            'approval_type': self.approval_type,
            'approval_settings': {
                'percentage_required': self.percentage_required,
                'specific_approver_id': self.specific_approver_id,
                'allow_manager_override': self.allow_manager_override,
                'auto_approve_after_days': self.auto_approve_after_days,
            },
            'is_active': self.is_active,
            'priority': self.priority,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }


class RuleApprover(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    rule_id = db.Column(db.Integer, db.ForeignKey('approval_rule.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    step = db.Column(db.Integer, nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    can_override = db.Column(db.Boolean, nullable=False, default=False)
    user = db.relationship('User')

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'step': self.step,
            'is_required': self.is_required,
            'can_override': self.can_override,
        }


class Expense(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    employee_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False, index=True)
    company_id = db.Column(db.Integer, db.ForeignKey('company.id'), nullable=False, index=True)
    amount = db.Column(db.Float, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default='USD')
    amount_in_company_currency = db.Column(db.Float, nullable=False)
    exchange_rate = db.Column(db.Float, nullable=False, default=1)
    category = db.Column(db.String(50), nullable=False)
    description = db.Column(db.String(500), nullable=False)
    expense_date = db.Column(db.Date, nullable=False)
    receipt_url = db.Column(db.String(200))

    status = db.Column(db.Enum(*STATUSES, name='expense_status'), nullable=False,
                       default=Status.PENDING.value, index=True)
    current_approver_id = db.Column(db.Integer, db.ForeignKey('user.id'), index=True)
    approval_step = db.Column(db.Integer, nullable=False, default=0)
    total_approvers = db.Column(db.Integer, nullable=False, default=0)
    approved_by = db.Column(db.JSON, nullable=False, default=list)
    rejected_by = db.Column(db.JSON, nullable=False, default=list)
    final_approval_date = db.Column(db.DateTime)
    rejection_reason = db.Column(db.String(500))

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    employee = db.relationship('User', foreign_keys=[employee_id], backref='expenses')
    current_approver = db.relationship('User', foreign_keys=[current_approver_id])
    company = db.relationship('Company', backref='expenses')
    history = db.relationship('ApprovalHistory', backref='expense', cascade='all, delete-orphan',
                              order_by='ApprovalHistory.id')

    @property
    def approval_percentage(self):
        if not self.total_approvers:
            return 0
        return round(len(self.approved_by or []) / self.total_approvers * 100)

    def to_dict(self, include_history=False):
        result = {
            'id': self.id,
            'employee': self.employee.summary() if self.employee else None,
            'company_id': self.company_id,
            'amount': self.amount,
            'currency': self.currency,
            'amount_in_company_currency': self.amount_in_company_currency,
            'exchange_rate': self.exchange_rate,
            'category': self.category,
            'description': self.description,
            'expense_date': isoformat(self.expense_date),
            'receipt_url': self.receipt_url,
            'status': self.status,
            'current_approver': self.current_approver.summary() if self.current_approver else None,
            'approval_step': self.approval_step,
            'total_approvers': self.total_approvers,
            'approved_by': list(self.approved_by or []),
            'rejected_by': list(self.rejected_by or []),
            'approval_percentage': self.approval_percentage,
            'final_approval_date': isoformat(self.final_approval_date),
            'rejection_reason': self.rejection_reason,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }
        if include_history:
            result['approval_history'] = [h.to_dict() for h in self.history]
        return result


class ApprovalHistory(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    expense_id = db.Column(db.Integer, db.ForeignKey('expense.id'), nullable=False, index=True)
    approver_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    action = db.Column(db.Enum(*ACTIONS, name='approval_action'), nullable=False)
    comment = db.Column(db.String(500), default='')
    step = db.Column(db.Integer, nullable=False)
    is_override = db.Column(db.Boolean, nullable=False, default=False)
    timestamp = db.Column(db.DateTime, default=utcnow)
    approver = db.relationship('User')

    def to_dict(self):
        return {
            'approver': self.approver.summary() if self.approver else None,
            'action': self.action,
            'comment': self.comment,
            'step': self.step,
            'is_override': self.is_override,
            'timestamp': isoformat(self.timestamp),
        }
