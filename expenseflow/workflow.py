"""Expense approval workflow engine.

Resolves the approval rule that applies to an expense, seeds the expense's
workflow state, and advances it as approvers decide. Each approval type is a
policy object exposing ``evaluate(state, approvers)``; the policies are pure
and know nothing about the database, so the persistence concerns (rule lookup,
the conditional update that commits a decision) live in the module functions.
"""
import logging
from collections import namedtuple

from sqlalchemy import or_

from expenseflow.auth import is_admin
from expenseflow.errors import (DecisionConflict, ExpenseNotPending, Forbidden, NotCurrentApprover,
                                ValidationError)
from expenseflow.model import (ACTIONS, ApprovalHistory, ApprovalRule, ApprovalType, Expense, Status, User,
                               db, utcnow)

logger = logging.getLogger(__name__)

PENDING = Status.PENDING.value
APPROVED = Status.APPROVED.value
REJECTED = Status.REJECTED.value

NO_REASON = 'No reason provided'
INSUFFICIENT_APPROVALS = 'Insufficient approvals'
OVERRIDE_PREFIX = '[ADMIN OVERRIDE]'
OVERRIDE_REJECTION = 'Rejected by admin override'

ApproverSlot = namedtuple('ApproverSlot', 'user_id step is_required')
WorkflowState = namedtuple('WorkflowState', 'approval_step total_approvers approved_by rejected_by')
# outcome is None while the workflow continues with next_approver_id
Evaluation = namedtuple('Evaluation', 'outcome next_approver_id next_step reason')


def approval_percentage(state):
    if not state.total_approvers:
        return 0.0
    return len(state.approved_by) / state.total_approvers * 100


def undecided(state, approvers):
    decided = set(state.approved_by) | set(state.rejected_by)
    return [a for a in approvers if a.user_id not in decided]


def approve(state):
    return Evaluation(APPROVED, None, state.approval_step, None)


def reject(state, reason):
    return Evaluation(REJECTED, None, state.approval_step, reason)


def advance(state, user_id):
    # The step only counts positions in a sequential chain
    return Evaluation(None, user_id, state.approval_step, None)


# ==================== POLICIES ====================

class ApprovalPolicy:
    """Base for policies that collect decisions from a pool of approvers.

    After each approval the policy checks its own termination condition; if
    it is not met the next undecided approver is asked, and once nobody is
    left the outcome falls back to comparing the approval percentage with
    the required one.
    """
    approval_type = None
    default_percentage = 100

    def __init__(self, rule=None):
        self.rule = rule

    @property
    def percentage_required(self):
        if self.rule is not None and self.rule.percentage_required is not None:
            return self.rule.percentage_required
        return self.default_percentage

    @property
    def specific_approver_id(self):
        return self.rule.specific_approver_id if self.rule is not None else None

    def is_satisfied(self, state, approvers):
        raise NotImplementedError

    def evaluate(self, state, approvers):
        if self.is_satisfied(state, approvers):
            return approve(state)
        remaining = undecided(state, approvers)
        if remaining:
            return advance(state, remaining[0].user_id)
        return self.on_exhausted(state, approvers)

    def on_exhausted(self, state, approvers):
        if approval_percentage(state) >= self.percentage_required:
            return approve(state)
        return reject(state, INSUFFICIENT_APPROVALS)


class SequentialPolicy(ApprovalPolicy):
    approval_type = ApprovalType.SEQUENTIAL.value

    def evaluate(self, state, approvers):
        if state.approval_step >= len(approvers):
            return approve(state)
        # Steps are 1-based, approvers are 0-based
        next_step = state.approval_step + 1
        return Evaluation(None, approvers[next_step - 1].user_id, next_step, None)


class ParallelPolicy(ApprovalPolicy):
    approval_type = ApprovalType.PARALLEL.value

    def is_satisfied(self, state, approvers):
        approved = set(state.approved_by)
        required = [a for a in approvers if a.is_required]
        return sum(1 for a in required if a.user_id in approved) >= len(required)

    def on_exhausted(self, state, approvers):
        return reject(state, INSUFFICIENT_APPROVALS)


class PercentagePolicy(ApprovalPolicy):
    approval_type = ApprovalType.PERCENTAGE.value

    def is_satisfied(self, state, approvers):
        return approval_percentage(state) >= self.percentage_required


class SpecificApproverPolicy(ApprovalPolicy):
    approval_type = ApprovalType.SPECIFIC_APPROVER.value

    def is_satisfied(self, state, approvers):
        return self.specific_approver_id is not None and self.specific_approver_id in state.approved_by


class HybridPolicy(ApprovalPolicy):
    approval_type = ApprovalType.HYBRID.value
    default_percentage = 60

    def is_satisfied(self, state, approvers):
        if approval_percentage(state) >= self.percentage_required:
            return True
        return self.specific_approver_id is not None and self.specific_approver_id in state.approved_by


POLICIES = {cls.approval_type: cls for cls in (
    SequentialPolicy, ParallelPolicy, PercentagePolicy, SpecificApproverPolicy, HybridPolicy)}


def policy_for(approval_type, rule=None):
    # Unknown types require every required approver, like parallel
    return POLICIES.get(approval_type, ParallelPolicy)(rule)


# ==================== RULE REPOSITORY ====================

def resolve_rule(company_id, amount):
    """Return the highest-priority active rule applicable to `amount`, or None."""
    return (ApprovalRule.query
            .filter(ApprovalRule.company_id == company_id,
                    ApprovalRule.is_active.is_(True),
                    or_(ApprovalRule.amount_threshold.is_(None),
                        ApprovalRule.amount_threshold <= amount))
            .order_by(ApprovalRule.priority.desc(),
                      ApprovalRule.amount_threshold.desc().nullslast(),
                      ApprovalRule.id)
            .first())


def resolve_approvers(expense):
    """Return (rule, approvers, approval_type) for the expense.

    Without a matching rule the submitter's manager is the single approver,
    provided the manager is flagged as an approver.
    """
    rule = resolve_rule(expense.company_id, expense.amount_in_company_currency)
    if rule is not None:
        approvers = [ApproverSlot(a.user_id, a.step, a.is_required)
                     for a in sorted(rule.approvers, key=lambda a: a.step)]
        return rule, approvers, rule.approval_type

    employee = expense.employee or db.session.get(User, expense.employee_id)
    manager = employee.manager if employee is not None else None
    if manager is not None and manager.is_manager_approver:
        return None, [ApproverSlot(manager.id, 1, True)], ApprovalType.SEQUENTIAL.value
    return None, [], ApprovalType.SEQUENTIAL.value


# ==================== WORKFLOW ====================

def initialize_workflow(expense):
    """Compute the approver list for a new or edited expense and persist it."""
    rule, approvers, approval_type = resolve_approvers(expense)

    expense.total_approvers = len(approvers)
    expense.approval_step = 0
    expense.approved_by = []
    expense.rejected_by = []
    expense.history = []
    expense.rejection_reason = None
    expense.final_approval_date = None
    expense.status = PENDING

    if approvers:
        expense.current_approver_id = approvers[0].user_id
        expense.approval_step = 1
    else:
        # No approvers needed, auto-approve
        expense.status = APPROVED
        expense.final_approval_date = utcnow()
        expense.current_approver_id = None

    db.session.commit()
    logger.info('Expense %s initialized: rule=%s type=%s approvers=%d status=%s',
                expense.id, rule.id if rule else None, approval_type, len(approvers), expense.status)


def claim_pending(expense):
    """Lock a pending expense before it is edited or deleted.

    Touches the row with an update conditioned on the workflow state that was
    read, so a decision committed in the meantime makes this raise
    DecisionConflict instead of being overwritten.
    """
    matched = (Expense.query
               .filter_by(id=expense.id, status=PENDING, current_approver_id=expense.current_approver_id,
                          approval_step=expense.approval_step)
               .update({'updated_at': utcnow()}, synchronize_session=False))
    if not matched:
        logger.warning('Expense %s was decided while being modified', expense.id)
        raise DecisionConflict('Expense was decided while it was being modified')


def revise_expense(expense, fields):
    """Apply edited fields to a pending expense and restart its workflow."""
    try:
        claim_pending(expense)
        for key, value in fields.items():
            setattr(expense, key, value)
        initialize_workflow(expense)
    except Exception:
        db.session.rollback()
        raise


def withdraw_expense(expense):
    expense_id = expense.id
    try:
        claim_pending(expense)
        db.session.delete(expense)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info('Expense %s deleted', expense_id)


def _decision_values(result, now):
    if result.outcome == APPROVED:
        return {'status': APPROVED, 'final_approval_date': now, 'current_approver_id': None}
    if result.outcome == REJECTED:
        return {'status': REJECTED, 'rejection_reason': result.reason,
                'final_approval_date': now, 'current_approver_id': None}
    return {'current_approver_id': result.next_approver_id, 'approval_step': result.next_step}


def record_decision(expense, approver_id, action, comment=None):
    """Apply the current approver's decision to a pending expense.

    The new state is committed with an update conditioned on the status,
    current approver and step the decision was made against; if another
    decision got there first, nothing is written and DecisionConflict is
    raised.
    """
    if action not in ACTIONS:
        raise ValidationError('Action must be "approved" or "rejected"')
    if expense.status != PENDING:
        raise ExpenseNotPending()
    if expense.current_approver_id != approver_id:
        raise NotCurrentApprover()

    step = expense.approval_step
    approved_by = list(expense.approved_by or [])
    rejected_by = list(expense.rejected_by or [])
    now = utcnow()

    try:
        if action == REJECTED:
            # A single rejection ends the workflow whatever the approval type
            rejected_by.append(approver_id)
            values = _decision_values(
                Evaluation(REJECTED, None, step, comment or NO_REASON), now)
        else:
            approved_by.append(approver_id)
            rule, approvers, approval_type = resolve_approvers(expense)
            state = WorkflowState(step, expense.total_approvers, approved_by, rejected_by)
            values = _decision_values(policy_for(approval_type, rule).evaluate(state, approvers), now)
        values['approved_by'] = approved_by
        values['rejected_by'] = rejected_by

        matched = (Expense.query
                   .filter_by(id=expense.id, status=PENDING, current_approver_id=approver_id,
                              approval_step=step)
                   .update(values, synchronize_session=False))
        if not matched:
            logger.warning('Decision by user %s on expense %s lost a concurrent update', approver_id, expense.id)
            raise DecisionConflict()

        db.session.add(ApprovalHistory(expense_id=expense.id, approver_id=approver_id, action=action,
                                       comment=comment or '', step=step, timestamp=now))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info('Expense %s step %d %s by user %s -> %s', expense.id, step, action, approver_id, expense.status)


def override(expense, acting_user, action, comment=None):
    """Force an expense into a terminal state, bypassing policy evaluation."""
    if not is_admin(acting_user):
        raise Forbidden('Only admin can override approvals')
    if action not in ACTIONS:
        raise ValidationError('Action must be "approved" or "rejected"')

    now = utcnow()
    expense.history.append(ApprovalHistory(
        approver_id=acting_user.id,
        action=action,
        comment=f'{OVERRIDE_PREFIX} {comment or NO_REASON}',
        step=expense.approval_step + 1,
        is_override=True,
        timestamp=now,
    ))
    expense.status = action
    expense.final_approval_date = now
    expense.current_approver_id = None
    if action == REJECTED:
        expense.rejection_reason = comment or OVERRIDE_REJECTION
    db.session.commit()
    logger.warning('Expense %s overridden to %s by admin %s', expense.id, action, acting_user.id)
