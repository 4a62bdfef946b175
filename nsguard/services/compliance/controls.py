"""
nsguard Compliance Mapping
--------------------------
Maps each violation kind the DriftDetector emits to framework citations:
  - CIS Kubernetes Benchmark (v1.8) section 5 (Policies)
  - NIST SP 800-53 Rev. 5 access-control and configuration-management controls

Each entry is a ControlMapping dataclass the ComplianceReporter attaches to a
Report, or that can be exported as JSON for GRC tools.
"""

from dataclasses import dataclass, field
from typing import Optional

from nsguard.services.shared.models import ViolationKind


@dataclass
class FrameworkRef:
    """A single framework citation with optional URL."""
    framework:   str   # e.g. "CIS Kubernetes Benchmark", "NIST SP 800-53"
    identifier:  str   # e.g. "5.1.3", "AC-6(5)"
    description: str
    url:         str   = ""


@dataclass
class ControlMapping:
    control_id:     str
    control_name:   str
    control_desc:   str
    violation_kind: ViolationKind
    refs:           list[FrameworkRef] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "control_id":     self.control_id,
            "control_name":   self.control_name,
            "violation_kind": self.violation_kind.value,
            "refs": [
                {"framework": r.framework, "identifier": r.identifier, "description": r.description}
                for r in self.refs
            ],
        }


# ── Framework reference helpers ───────────────────────────────────────────────

def _cis(section: str, desc: str) -> FrameworkRef:
    return FrameworkRef(
        framework="CIS Kubernetes Benchmark",
        identifier=section,
        description=desc,
        url="https://www.cisecurity.org/benchmark/kubernetes",
    )


def _nist(control: str, desc: str) -> FrameworkRef:
    return FrameworkRef(
        framework="NIST SP 800-53",
        identifier=control,
        description=desc,
        url=f"https://csrc.nist.gov/projects/cprt/catalog#/cprt/framework/version/SP_800_53_5_1_1/home?element={control.split('(')[0]}",
    )


# ── Control Mappings ──────────────────────────────────────────────────────────

CONTROLS: list[ControlMapping] = [

    ControlMapping(
        control_id="wildcard_rbac",
        control_name="Wildcard RBAC Rules",
        control_desc="Roles granting '*' verbs or resource types give access to objects added in the future.",
        violation_kind=ViolationKind.wildcard_permission,
        refs=[
            _cis("5.1.3", "Minimize wildcard use in Roles and ClusterRoles"),
            _nist("AC-6", "Least Privilege"),
        ],
    ),

    ControlMapping(
        control_id="cluster_admin_binding",
        control_name="Cluster-Admin Bindings",
        control_desc="Bindings to cluster-admin-equivalent roles outside break-glass JIT grants.",
        violation_kind=ViolationKind.cluster_admin_binding,
        refs=[
            _cis("5.1.1", "Ensure that the cluster-admin role is only used where required"),
            _nist("AC-6(5)", "Least Privilege | Privileged Accounts"),
            _nist("AC-2(7)", "Account Management | Privileged User Accounts"),
        ],
    ),

    ControlMapping(
        control_id="unscoped_ingress",
        control_name="Unscoped Network Ingress",
        control_desc="NetworkPolicy ingress rules with no peer restriction re-open selected workloads to every source.",
        violation_kind=ViolationKind.unscoped_network_ingress,
        refs=[
            _cis("5.3.2", "Ensure that all Namespaces have NetworkPolicies defined"),
            _nist("SC-7", "Boundary Protection"),
            _nist("AC-4", "Information Flow Enforcement"),
        ],
    ),

    ControlMapping(
        control_id="orphaned_grant",
        control_name="Unused Elevated Access",
        control_desc="Active JIT grants whose principal has not exercised them within the staleness window.",
        violation_kind=ViolationKind.orphaned_grant,
        refs=[
            _nist("AC-2(3)", "Account Management | Disable Accounts"),
            _nist("AC-6(7)", "Least Privilege | Review of User Privileges"),
        ],
    ),

    ControlMapping(
        control_id="configuration_drift",
        control_name="Policy Configuration Drift",
        control_desc="Live policy objects diverging from the trusted baseline.",
        violation_kind=ViolationKind.configuration_drift,
        refs=[
            _nist("CM-2", "Baseline Configuration"),
            _nist("CM-3", "Configuration Change Control"),
            _nist("CM-6", "Configuration Settings"),
        ],
    ),
]


# ── Lookup helpers ────────────────────────────────────────────────────────────

def get_control(control_id: str) -> Optional[ControlMapping]:
    """Return a control by its ID, or None if not found."""
    return next((c for c in CONTROLS if c.control_id == control_id), None)


def controls_for_kind(kind: ViolationKind) -> list[ControlMapping]:
    return [c for c in CONTROLS if c.violation_kind == kind]


def controls_by_framework(framework: str) -> list[ControlMapping]:
    """Return controls that reference a specific framework (partial match)."""
    fw = framework.lower()
    return [c for c in CONTROLS if any(fw in r.framework.lower() for r in c.refs)]
