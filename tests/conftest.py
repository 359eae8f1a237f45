"""Shared sample comments and record builders for prhealth tests."""

from prhealth.models import (
    ApprovalRecord,
    CommentRecord,
    PullRecord,
    SmokeTestFact,
    StoredSmokeTest,
    TestFailureRecord,
    UpgradeTestResult,
)

KVM_LOGS_URL = (
    "https://github.com/blueorangutan/acs-prs/releases/download/trillian/"
    "pr12098-t14865-kvm-ol8.zip"
)

SMOKE_OK_BODY = """[SF] Trillian test result (tid-14866)
Environment: vmware-70u3 (x2), Advanced Networking with Mgmt server ol8
Total time taken: 49811 seconds
Marvin logs: https://github.com/blueorangutan/acs-prs/releases/download/trillian/pr12098-t14866-vmware-70u3.zip
Smoke tests completed. 141 look OK, 0 have errors, 0 did not run
Only failed and skipped tests results shown below:


Test | Result | Time (s) | Test File
--- | --- | --- | ---
"""

SMOKE_FAIL_BODY = f"""[SF] Trillian test result (tid-14865)
Environment: kvm-ol8 (x2), Advanced Networking with Mgmt server ol8
Total time taken: 51431 seconds
Marvin logs: {KVM_LOGS_URL}
Smoke tests completed. 139 look OK, 2 have errors, 1 did not run
Only failed and skipped tests results shown below:


Test | Result | Time (s) | Test File
--- | --- | --- | ---
test_01_migrate_vm | `Error` | 51.23 | test_vm_life_cycle.py
test_02_deploy_ha_vm | `Failure` | 312.80 | test_vm_ha.py
test_03_secured_vm_migration | `Skip` | --- | test_vm_life_cycle.py

Some trailing note
"""

COVERAGE_BODY = """## [Codecov](https://app.codecov.io/gh/apache/cloudstack/pull/12098?src=pr) Report
Attention: Patch coverage is `42.10%` with `11 lines` in your changes missing coverage.
> Project coverage is 16.12%. Comparing base (`a1b2c3d`) to head (`e4f5a6b`).
"""

UNRELATED_BODY = "LGTM, thanks for the fix. Could you rebase on main?"


def make_comment(body, author="blueorangutan", created_at="2025-03-01T10:00:00Z", **kw):
    """Build a CommentRecord with sensible defaults."""
    return CommentRecord(body=body, author_login=author, created_at=created_at, **kw)


def make_result(pr_number, test_name, result="Error", hypervisor="KVM",
                version="ol8", test_date="2025-03-01T10:00:00Z", **kw):
    """Build a TestFailureRecord; only the PR and test name are required."""
    return TestFailureRecord(
        pr_number=pr_number,
        test_name=test_name,
        result=result,
        hypervisor=hypervisor,
        hypervisor_version=version,
        test_date=test_date,
        **kw,
    )


def make_smoke(pr_number, hypervisor="KVM", version="ol8", status="OK",
               created_at="2025-03-01T10:00:00Z", body="", **kw):
    """Build a StoredSmokeTest wrapping a minimal SmokeTestFact."""
    passed = kw.pop("passed", 100)
    total = kw.pop("total", passed)
    fact = SmokeTestFact(
        hypervisor=hypervisor,
        version=version,
        passed=passed,
        total=total,
        status=status,
        created_at=created_at,
        **kw,
    )
    return StoredSmokeTest(pr_number=pr_number, fact=fact, body=body)


def make_pull(number, title="", state="open", labels=None, **kw):
    return PullRecord(
        number=number,
        title=title or f"PR {number}",
        state=state,
        labels=list(labels or []),
        **kw,
    )


def make_approval(pr_number, login, state="APPROVED"):
    return ApprovalRecord(pr_number=pr_number, approver_login=login, state=state)


def make_upgrade(timestamp_start="2025-03-01T10:00:00Z", start="4.19.1.0", target="4.20.0.0",
                 distro="ol8", hypervisor="KVM", status="PASS", **kw):
    """Build an UpgradeTestResult; status None means still running."""
    return UpgradeTestResult(
        timestamp_start=timestamp_start,
        upgrade_start_version=start,
        upgrade_target_version=target,
        management_server_os=distro,
        hypervisor=hypervisor,
        overall_status=status,
        **kw,
    )
