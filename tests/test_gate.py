"""Tests for stack/gate.py - GitHub job-status teardown gate."""

import sys
from pathlib import Path
from unittest.mock import MagicMock

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
import requests

from conftest import FakeEC2, client_error
from deadline import CancelToken, Deadline, OperationCancelled
from stack.ec2 import StackError, get_tag_value
from stack.gate import (
    GateFormatError,
    JobStatusError,
    TeardownBlocked,
    TeardownGate,
    check_jobs_completed,
    cleanup_vpcs,
    validate_repository,
    validate_run_id,
)


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = body if body is not None else {}
    return resp


def _session(resp=None, error=None):
    session = MagicMock()
    if error is not None:
        session.get.side_effect = error
    else:
        session.get.return_value = resp
    return session


def _tagged_ec2(tags: dict) -> FakeEC2:
    ec2 = FakeEC2()

    def describe_tags(Filters):
        key = next(f['Values'][0] for f in Filters if f['Name'] == 'key')
        if key in tags:
            return {'Tags': [{'Key': key, 'Value': tags[key]}]}
        return {'Tags': []}

    ec2.responses['describe_tags'] = describe_tags
    return ec2


RUN_TAGS = {'GitHubRepository': 'NVIDIA/holodeck', 'GitHubRunId': '12345678'}


class TestValidators:

    @pytest.mark.parametrize('repo', ['NVIDIA/holodeck', 'org-1/repo_2', 'a.b/c.d'])
    def test_valid_repositories(self, repo):
        assert validate_repository(repo)

    @pytest.mark.parametrize('repo', ['holodeck', '/repo', 'org/', 'org/sub/repo', '', 'org/re po'])
    def test_invalid_repositories(self, repo):
        assert not validate_repository(repo)

    @pytest.mark.parametrize('run_id', ['12345678', '0'])
    def test_valid_run_ids(self, run_id):
        assert validate_run_id(run_id)

    @pytest.mark.parametrize('run_id', ['', '123abc', '123 456', '-1', '١٢٣'])
    def test_invalid_run_ids(self, run_id):
        assert not validate_run_id(run_id)


class TestCheckJobsCompleted:

    def test_malformed_input_makes_no_request(self):
        session = _session(_response())
        with pytest.raises(GateFormatError, match='repository'):
            check_jobs_completed('holodeck', '1', session=session)
        with pytest.raises(GateFormatError, match='runID'):
            check_jobs_completed('NVIDIA/holodeck', '12a', session=session)
        session.get.assert_not_called()

    def test_request_shape(self):
        session = _session(_response(body={'jobs': []}))
        check_jobs_completed('NVIDIA/holodeck', '42', token='ghp_x', session=session)
        url = session.get.call_args[0][0]
        kwargs = session.get.call_args[1]
        assert url == 'https://api.github.com/repos/NVIDIA/holodeck/actions/runs/42/jobs'
        assert kwargs['headers']['Authorization'] == 'Bearer ghp_x'
        assert kwargs['timeout'] == 10

    def test_no_token_no_auth_header(self):
        session = _session(_response(body={'jobs': []}))
        check_jobs_completed('NVIDIA/holodeck', '42', session=session)
        assert 'Authorization' not in session.get.call_args[1]['headers']

    def test_404_counts_as_completed(self):
        assert check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(404))) is True

    def test_other_status_is_error(self):
        with pytest.raises(JobStatusError, match='500'):
            check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(500)))

    def test_empty_job_list_is_completed(self):
        assert check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(body={'jobs': []})))

    def test_all_completed(self):
        body = {'jobs': [{'status': 'completed'}, {'status': 'completed'}]}
        assert check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(body=body)))

    def test_any_running_is_not_completed(self):
        body = {'jobs': [{'status': 'completed'}, {'status': 'in_progress'}]}
        assert not check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(body=body)))

    def test_network_error(self):
        session = _session(error=requests.exceptions.ConnectionError('refused'))
        with pytest.raises(JobStatusError):
            check_jobs_completed('NVIDIA/holodeck', '42', session=session)

    def test_bad_json(self):
        resp = _response()
        resp.json.side_effect = ValueError('not json')
        with pytest.raises(JobStatusError, match='decode'):
            check_jobs_completed('NVIDIA/holodeck', '42', session=_session(resp))

    @pytest.mark.parametrize('body', [
        {'jobs': {'a': 'b'}},
        {'jobs': 'queued'},
        {'jobs': ['completed']},
    ])
    def test_unexpected_shape_is_decode_error(self, body):
        with pytest.raises(JobStatusError, match='decode'):
            check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(body=body)))

    def test_null_job_is_not_completed(self):
        body = {'jobs': [{'status': 'completed'}, None]}
        assert check_jobs_completed('NVIDIA/holodeck', '42', session=_session(_response(body=body))) is False


class TestGetTagValue:

    def test_present(self):
        assert get_tag_value(_tagged_ec2(RUN_TAGS), 'vpc-1', 'GitHubRunId') == '12345678'

    def test_absent_is_empty(self):
        assert get_tag_value(_tagged_ec2({}), 'vpc-1', 'GitHubRunId') == ''

    def test_query_error_raises(self):
        ec2 = FakeEC2()
        ec2.errors['describe_tags'] = client_error('UnauthorizedOperation', 'DescribeTags')
        with pytest.raises(StackError, match='describe tags'):
            get_tag_value(ec2, 'vpc-1', 'GitHubRunId')


class TestAuthorize:

    def test_no_token_allows(self):
        checker = MagicMock()
        gate = TeardownGate(_tagged_ec2(RUN_TAGS), token='', jobs_completed=checker)
        assert gate.authorize('vpc-1') is True
        checker.assert_not_called()

    def test_missing_tags_allow(self):
        checker = MagicMock()
        gate = TeardownGate(_tagged_ec2({'GitHubRepository': 'NVIDIA/holodeck'}), token='t',
                            jobs_completed=checker)
        assert gate.authorize('vpc-1') is True
        checker.assert_not_called()

    def test_running_jobs_deny(self):
        gate = TeardownGate(_tagged_ec2(RUN_TAGS), token='t', jobs_completed=lambda r, i, t: False)
        assert gate.authorize('vpc-1') is False

    def test_completed_jobs_allow(self):
        calls = []

        def checker(repo, run_id, token):
            calls.append((repo, run_id, token))
            return True

        gate = TeardownGate(_tagged_ec2(RUN_TAGS), token='t', jobs_completed=checker)
        assert gate.authorize('vpc-1') is True
        assert calls == [('NVIDIA/holodeck', '12345678', 't')]

    @pytest.mark.parametrize('error', [JobStatusError('timeout'), GateFormatError('bad repo')])
    def test_query_errors_fail_open(self, error):
        checker = MagicMock(side_effect=error)
        gate = TeardownGate(_tagged_ec2(RUN_TAGS), token='t', jobs_completed=checker)
        assert gate.authorize('vpc-1') is True

    def test_malformed_jobs_body_fails_open(self):
        session = _session(_response(body={'jobs': {'a': 'b'}}))
        gate = TeardownGate(
            _tagged_ec2(RUN_TAGS), token='t',
            jobs_completed=lambda repo, run_id, token: check_jobs_completed(repo, run_id, token, session=session),
        )
        assert gate.authorize('vpc-1') is True

    def test_tag_read_error_is_not_fail_open(self):
        ec2 = FakeEC2()
        ec2.errors['describe_tags'] = client_error('RequestLimitExceeded', 'DescribeTags')
        gate = TeardownGate(ec2, token='t', jobs_completed=lambda r, i, t: True)
        with pytest.raises(StackError):
            gate.authorize('vpc-1')


class TestCleanup:

    def test_blocked_vpc_is_not_deleted(self):
        deleter = MagicMock()
        gate = TeardownGate(_tagged_ec2(RUN_TAGS), token='t', jobs_completed=lambda r, i, t: False)
        with pytest.raises(TeardownBlocked, match='github jobs are still running for vpc vpc-1'):
            gate.cleanup_vpc('vpc-1', deleter)
        deleter.delete_vpc_resources.assert_not_called()

    def test_force_skips_check(self):
        deleter = MagicMock()
        checker = MagicMock()
        gate = TeardownGate(_tagged_ec2(RUN_TAGS), token='t', jobs_completed=checker)
        gate.cleanup_vpc('vpc-1', deleter, force=True)
        checker.assert_not_called()
        deleter.delete_vpc_resources.assert_called_once_with('vpc-1')

    def test_batch_continues_past_failures(self):
        gate = TeardownGate(_tagged_ec2({}), token='')
        deleters = []

        def make_deleter(_deadline):
            deleter = MagicMock()
            if not deleters:
                deleter.delete_vpc_resources.side_effect = StackError('boom')
            deleters.append(deleter)
            return deleter

        results = cleanup_vpcs(['vpc-1', 'vpc-2'], gate, make_deleter, lambda: Deadline(60))
        assert isinstance(results['vpc-1'], StackError)
        assert results['vpc-2'] is None

    def test_batch_stops_on_cancellation(self):
        gate = TeardownGate(_tagged_ec2({}), token='')
        token = CancelToken()

        def make_deleter(_deadline):
            deleter = MagicMock()
            deleter.delete_vpc_resources.side_effect = OperationCancelled('stop', reason='interrupt')
            return deleter

        made = []

        def make_deadline():
            made.append(1)
            return Deadline(60, token)

        with pytest.raises(OperationCancelled):
            cleanup_vpcs(['vpc-1', 'vpc-2'], gate, make_deleter, make_deadline)
        assert len(made) == 1
