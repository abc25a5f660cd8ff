"""Billing split resolution between patients.

A split is a directed edge: the payer's record names a partner and the share of
its own base charge the payer keeps. The partner carries no back reference and
is billed the complement. Incoming splits are discovered by scanning the roster
and only the first match in roster order is billed; extra incoming splits and
cycles are reported as anomalies rather than corrected.
"""

from collections.abc import Callable, Iterable, Sequence

from clinic_finance.patient_financials.models import Patient, SplitAnomaly


class SplitReferenceError(ValueError):
    """Raised when a new split edge would be self-referential, dangling or cyclic."""


class SplitIndex:
    """Edge table of active billing splits built from a roster snapshot."""

    def __init__(self, patients: Iterable[Patient]):
        self.patient_ids: set[str] = set()
        self.edges: dict[str, str] = {}
        self.percentages: dict[str, float] = {}
        self.incoming: dict[str, list[str]] = {}

        for patient in patients:
            self.patient_ids.add(patient.id)
            info = patient.billing_info
            if info is None or not info.is_active:
                continue
            partner_id = str(info.split_with_patient_id)
            self.edges[patient.id] = partner_id
            self.percentages[patient.id] = float(info.split_percentage)
            self.incoming.setdefault(partner_id, []).append(patient.id)

    def partner_of(self, patient_id: str) -> str | None:
        return self.edges.get(patient_id)

    def payers_of(self, patient_id: str) -> list[str]:
        """Patients splitting toward patient_id, in roster order."""
        return list(self.incoming.get(patient_id, []))

    def path_from(self, patient_id: str) -> list[str]:
        """Follow split edges from patient_id until a dead end or a repeat."""
        path = [patient_id]
        seen = {patient_id}
        current = patient_id
        while current in self.edges:
            current = self.edges[current]
            path.append(current)
            if current in seen:
                break
            seen.add(current)
        return path

    def would_cycle(self, payer_id: str, partner_id: str) -> bool:
        """True if adding payer -> partner closes a loop back to payer."""
        if payer_id == partner_id:
            return True
        edges = dict(self.edges)
        edges.pop(payer_id, None)
        current = partner_id
        visited: set[str] = set()
        while current in edges and current not in visited:
            visited.add(current)
            current = edges[current]
            if current == payer_id:
                return True
        return False


def validate_split_reference(roster: Sequence[Patient], payer_id: str, partner_id: str) -> None:
    """Reject a split edge before it is stored.

    Raises:
        SplitReferenceError: self-reference, unknown partner, or a cycle
    """
    if payer_id == partner_id:
        raise SplitReferenceError(f"Patient '{payer_id}' cannot split a bill with itself")

    index = SplitIndex(roster)
    if partner_id not in index.patient_ids:
        raise SplitReferenceError(f"Split partner '{partner_id}' does not exist")
    if index.would_cycle(payer_id, partner_id):
        raise SplitReferenceError(
            f"Splitting '{payer_id}' with '{partner_id}' would create a cyclic billing split"
        )


def find_incoming_payer(patient: Patient, all_patients: Sequence[Patient]) -> Patient | None:
    """First patient in roster order that splits its bill toward patient."""
    return next(
        (
            p
            for p in all_patients
            if p.billing_info is not None
            and p.billing_info.split_with_patient_id == patient.id
            and p.billing_info.split_percentage is not None
        ),
        None,
    )


def resolve_split_charge(
    patient: Patient,
    all_patients: Sequence[Patient],
    *,
    base_charge: Callable[[Patient], float],
    one_time_charges: float,
) -> float:
    """Charge owed by patient after applying its own split and any incoming share.

    One-time charges are never split; they stay with the patient they were
    issued against.

    Args:
        patient: Patient being billed
        all_patients: Roster snapshot used to discover incoming splits
        base_charge: Callable returning a patient's pro-rata base charge
        one_time_charges: Sum of the patient's one-time charges

    Returns:
        Unrounded total charge
    """
    own_base = base_charge(patient)
    info = patient.billing_info

    if info is not None and info.is_active:
        charge = own_base * (info.split_percentage / 100) + one_time_charges
    else:
        charge = own_base + one_time_charges

    payer = find_incoming_payer(patient, all_patients)
    if payer is not None:
        payer_share = payer.billing_info.split_percentage
        charge += base_charge(payer) * ((100 - payer_share) / 100)

    return charge


def detect_split_anomalies(all_patients: Sequence[Patient]) -> list[SplitAnomaly]:
    """Find split relationships that are billed incorrectly or ambiguously."""
    index = SplitIndex(all_patients)
    anomalies: list[SplitAnomaly] = []

    for payer_id, partner_id in index.edges.items():
        if payer_id == partner_id:
            anomalies.append(
                SplitAnomaly(
                    kind="self_reference",
                    patient_ids=[payer_id],
                    detail=f"Patient '{payer_id}' splits its bill with itself",
                )
            )
        elif partner_id not in index.patient_ids:
            anomalies.append(
                SplitAnomaly(
                    kind="dangling_reference",
                    patient_ids=[payer_id, partner_id],
                    detail=f"Patient '{payer_id}' splits with unknown patient '{partner_id}'",
                )
            )

    reported_cycles: set[tuple[str, ...]] = set()
    for payer_id in index.edges:
        path = index.path_from(payer_id)
        if len(path) < 2 or path[-1] not in path[:-1]:
            continue
        loop = path[path.index(path[-1]) : -1]
        if len(loop) < 2:
            continue
        # Rotate so the same loop found from another member compares equal
        pivot = loop.index(min(loop))
        key = tuple(loop[pivot:] + loop[:pivot])
        if key in reported_cycles:
            continue
        reported_cycles.add(key)
        anomalies.append(
            SplitAnomaly(
                kind="cycle",
                patient_ids=list(key),
                detail="Cyclic billing split: " + " -> ".join(key + (key[0],)),
            )
        )

    for partner_id, payers in index.incoming.items():
        if len(payers) > 1:
            anomalies.append(
                SplitAnomaly(
                    kind="multiple_incoming",
                    patient_ids=[partner_id, *payers],
                    detail=(
                        f"{len(payers)} patients split toward '{partner_id}'; "
                        f"only '{payers[0]}' is billed"
                    ),
                )
            )

    return anomalies


def anomalies_for(patient_id: str, anomalies: Iterable[SplitAnomaly]) -> list[SplitAnomaly]:
    return [a for a in anomalies if patient_id in a.patient_ids]
