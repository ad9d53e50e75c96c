# pylint: disable=redefined-outer-name,missing-docstring

from datetime import datetime, timedelta, timezone

import pytest
from botocore.exceptions import ClientError, ProfileNotFound

import aws_mfa_env
from aws_mfa_env import BOTO_CONFIG, get_session_token


@pytest.fixture
def sts(mocker):
    boto_session = mocker.patch("aws_mfa_env.boto3.Session")
    client = boto_session.return_value.client.return_value
    client.get_session_token.return_value = {
        "Credentials": {
            "AccessKeyId": "ASIAEXAMPLE",
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": datetime(2026, 10, 20, 0, 0, tzinfo=timezone(timedelta(hours=2))),
        }
    }
    return boto_session


def test_exchange_returns_session_with_iso_expiration(sts):
    session = get_session_token("dev", "arn:aws:iam::123:mfa/dev", "123456")
    assert session == {
        "AccessKeyId": "ASIAEXAMPLE",
        "SecretAccessKey": "secret",
        "SessionToken": "token",
        "Expiration": "2026-10-19T22:00:00+00:00",
    }


def test_exchange_sends_serial_and_code_without_duration(sts):
    get_session_token("dev", "arn:aws:iam::123:mfa/dev", "123456")

    sts.return_value.client.assert_called_once_with("sts", config=BOTO_CONFIG)
    sts.return_value.client.return_value.get_session_token.assert_called_once_with(
        SerialNumber="arn:aws:iam::123:mfa/dev", TokenCode="123456"
    )


def test_exchange_uses_profile_and_credentials_file(sts, tmp_path):
    credentials_file = tmp_path / "credentials"
    get_session_token("dev", "serial", "123456", credentials_file=credentials_file)

    core_session = sts.call_args.kwargs["botocore_session"]
    assert core_session.profile == "dev"
    assert core_session.get_config_variable("credentials_file") == str(credentials_file)


def test_exchange_propagates_client_errors(sts):
    error = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "MultiFactorAuthentication failed"}},
        "GetSessionToken",
    )
    sts.return_value.client.return_value.get_session_token.side_effect = error

    with pytest.raises(ClientError) as excinfo:
        get_session_token("dev", "serial", "000000")
    assert excinfo.value is error


def test_exchange_propagates_botocore_errors(mocker):
    mocker.patch.object(aws_mfa_env.boto3, "Session", side_effect=ProfileNotFound(profile="dev"))
    with pytest.raises(ProfileNotFound):
        get_session_token("dev", "serial", "123456")
