from datetime import date

import pytest
from flask import g

from expenseflow.app import create_app
from expenseflow.config import TestConfig
from expenseflow.currency import Conversion
from expenseflow.errors import ConversionFailure
from expenseflow.model import ApprovalRule, Company, Expense, RuleApprover, User, db


class FakeConverter:
    def __init__(self, rates):
        self.rates = rates

    def convert(self, amount, from_curr, to_curr):
        if from_curr == to_curr:
            return Conversion(amount, 1.0)
        if (from_curr, to_curr) not in self.rates:
            raise ConversionFailure(f'Exchange rate not found for {from_curr} to {to_curr}')
        rate = self.rates[(from_curr, to_curr)]
        return Conversion(round(amount * rate, 2), rate)


@pytest.fixture
def converter():
    return FakeConverter({('EUR', 'USD'): 1.1, ('INR', 'USD'): 0.012})


@pytest.fixture
def app(tmp_path, converter):
    config = {key: getattr(TestConfig, key) for key in dir(TestConfig) if key.isupper()}
    config['SQLALCHEMY_DATABASE_URI'] = f"sqlite:///{tmp_path / 'test.db'}"
    app = create_app(config, converter=converter)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def company(app):
    company = Company(name='TechCorp Inc.', country='United States', currency='USD', max_expense_amount=10000)
    db.session.add(company)
    db.session.commit()
    return company


@pytest.fixture
def make_user(company):
    def make(email, role='employee', manager=None, approver=False, company_id=None):
        user = User(
            email=email,
            name=email.split('@')[0].title(),
            role=role,
            company_id=company_id or company.id,
            manager_id=manager.id if manager else None,
            is_manager_approver=approver,
        )
        user.set_password('secret')
        db.session.add(user)
        db.session.commit()
        return user
    return make


@pytest.fixture
def admin(make_user):
    return make_user('admin@company.com', role='admin')


@pytest.fixture
def manager(make_user):
    return make_user('manager@company.com', role='manager', approver=True)


@pytest.fixture
def employee(make_user, manager):
    return make_user('employee@company.com', manager=manager)


@pytest.fixture
def approvers(make_user):
    return [make_user(f'approver{i}@company.com', role='manager', approver=True) for i in range(1, 6)]


@pytest.fixture
def make_rule(company):
    def make(approval_type, users, threshold=0, priority=0, percentage=None, specific=None, optional=(),
             is_active=True):
        rule = ApprovalRule(
            company_id=company.id,
            name=f'{approval_type} rule',
            approval_type=approval_type,
            amount_threshold=threshold,
            priority=priority,
            percentage_required=percentage,
            specific_approver_id=specific.id if specific else None,
            is_active=is_active,
        )
        for step, user in enumerate(users, 1):
            rule.approvers.append(RuleApprover(user_id=user.id, step=step, is_required=user not in optional))
        db.session.add(rule)
        db.session.commit()
        return rule
    return make


@pytest.fixture
def make_expense(company):
    def make(employee, amount=500.0, currency='USD'):
        expense = Expense(
            employee_id=employee.id,
            company_id=company.id,
            amount=amount,
            currency=currency,
            amount_in_company_currency=amount,
            exchange_rate=1.0,
            category='Travel',
            description='Client visit',
            expense_date=date(2024, 5, 1),
        )
        db.session.add(expense)
        db.session.flush()
        return expense
    return make


@pytest.fixture
def login(client):
    def log_in(user):
        with client.session_transaction() as sess:
            sess['_user_id'] = str(user.id)
            sess['_fresh'] = True
        # Requests share the fixture's app context, so drop the cached user
        g.pop('_login_user', None)
    return log_in
