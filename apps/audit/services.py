from apps.audit.models import AuditLog


def record_audit(*, actor, action, entity_type, entity_id, payload=None):
    if actor is not None and not getattr(actor, "is_authenticated", False):
        actor = None
    return AuditLog.objects.create(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=payload or {},
    )


def audit_entity_ids(*, action, entity_type, entity_id, payload_key):
    values = AuditLog.objects.filter(
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
    ).values_list("payload", flat=True)
    return [payload[payload_key] for payload in values if isinstance(payload, dict) and payload.get(payload_key)]
