import pytest

from bibliodesk.errors import NotFoundError, ValidationError
from bibliodesk.policies import AuthorizationStatus


def test_effective_loan_policy_defaults(policies):
    policy = policies.effective_loan_policy()
    assert (policy.loan_limit, policy.loan_period_days, policy.renewals_allowed) == (3, 15, 1)


def test_loan_policy_upsert(policies, library):
    assert policies.get_loan_policy(library.id) is None

    policies.put_loan_policy(library.id, loan_limit=2, loan_period_days=10, renewals_allowed=0)
    policies.put_loan_policy(library.id, loan_limit=4, loan_period_days=21, renewals_allowed=2)

    stored = policies.get_loan_policy(library.id)
    assert stored.to_dict() == {
        "library_id": library.id,
        "loan_limit": 4,
        "loan_period_days": 21,
        "renewals_allowed": 2,
    }
    assert policies.effective_loan_policy().loan_period_days == 21

    assert policies.delete_loan_policy(library.id) is True
    assert policies.delete_loan_policy(library.id) is False
    assert policies.effective_loan_policy().loan_period_days == 15


def test_effective_policy_uses_lowest_id_library(policies, library):
    branch = policies.create_library("Biblioteca do Bairro")
    policies.put_loan_policy(branch.id, loan_limit=1, loan_period_days=3, renewals_allowed=0)

    assert policies.effective_loan_policy().library_id == library.id
    assert policies.effective_loan_policy().loan_period_days == 15
    assert policies.effective_loan_policy(branch.id).loan_period_days == 3


@pytest.mark.parametrize("value", [-1, "7", 2.5, True, None])
def test_loan_policy_rejects_bad_numbers(policies, library, value):
    with pytest.raises(ValidationError) as excinfo:
        policies.put_loan_policy(library.id, loan_limit=value, loan_period_days=15, renewals_allowed=1)
    assert "loan_limit" in excinfo.value.fields


def test_fine_policy(policies, library):
    policies.put_fine_policy(library.id, daily_fine=0.5, max_fine=20)

    assert policies.default_fine_policy().to_dict() == {"library_id": library.id, "daily_fine": 0.5, "max_fine": 20.0}
    with pytest.raises(ValidationError):
        policies.put_fine_policy(library.id, daily_fine=-0.5, max_fine=20)


def test_notification_setting(policies, library):
    setting = policies.put_notification_setting(library.id, notify_email=True, notify_sms=False, return_reminder_days=3)

    assert setting.return_reminder_days == 3
    assert policies.get_notification_setting(library.id).notify_email is True
    with pytest.raises(ValidationError):
        policies.put_notification_setting(library.id, True, False, -2)


def test_unknown_library(policies):
    with pytest.raises(NotFoundError):
        policies.put_loan_policy(42, loan_limit=1, loan_period_days=1, renewals_allowed=1)
    with pytest.raises(NotFoundError):
        policies.delete_fine_policy(42)
    with pytest.raises(NotFoundError):
        policies.require_email_account(42)


def test_library_name_required(policies):
    with pytest.raises(ValidationError):
        policies.create_library("   ")


def test_email_account_row(policies, library):
    account = policies.put_email_account(library.id, " Biblioteca@Gmail.com ")

    assert account.gmail_user_email == "biblioteca@gmail.com"
    assert account.authorization_status == AuthorizationStatus.NOT_AUTHORIZED
    assert "gmail_oauth_token" not in account.to_dict()
    with pytest.raises(ValidationError):
        policies.put_email_account(library.id, "sem-arroba")
    with pytest.raises(NotFoundError):
        policies.require_email_account(policies.create_library("Outra").id)
