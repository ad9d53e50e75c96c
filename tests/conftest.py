"""
Shared test fixtures.
"""

import pytest

from aws_mfa_env import CredentialsFile, SessionCache

CREDENTIALS = """\
[default]
aws_access_key_id = AKIADEFAULTEXAMPLE
aws_secret_access_key = default/secret%key

[dev]
aws_access_key_id = AKIADEVEXAMPLE
aws_secret_access_key = dev/secret
aws_mfa_serial = arn:aws:iam::123:mfa/dev

[dev-admin]
aws_access_key_id = AKIADEVADMINEXAMPLE
aws_secret_access_key = dev-admin/secret
AWS_MFA_SERIAL=arn:aws:iam::123:mfa/dev-admin
"""


@pytest.fixture
def credentials():
    return CredentialsFile(CREDENTIALS)


@pytest.fixture
def credentials_path(tmp_path):
    path = tmp_path / "credentials"
    path.write_text(CREDENTIALS)
    return path


@pytest.fixture
def cache(tmp_path):
    return SessionCache(tmp_path / "session-data")


@pytest.fixture
def env_path(tmp_path):
    return tmp_path / "env"


def make_session(expiration, suffix="1"):
    return {
        "AccessKeyId": f"ASIAEXAMPLE{suffix}",
        "SecretAccessKey": f"secret{suffix}",
        "SessionToken": f"token{suffix}",
        "Expiration": expiration,
    }


@pytest.fixture
def session_factory():
    return make_session
