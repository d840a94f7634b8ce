"""initial incident response schema

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _user_fk(name: str, ondelete: str = "SET NULL", nullable: bool = True) -> sa.Column:
    return sa.Column(name, sa.Integer(), sa.ForeignKey("users.id", ondelete=ondelete), nullable=nullable)


def _org_fk(nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete=ondelete), nullable=nullable)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create the platform, organization and incident-response tables."""
    # Check if tables already exist (idempotent)
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    # Accounts and RBAC
    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("email", sa.String(320), nullable=False, unique=True),
            sa.Column("name", sa.String(100), nullable=True),
            sa.Column("password_hash", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("phone", sa.String(50), nullable=True),
            sa.Column("title", sa.String(100), nullable=True),
            sa.Column("department", sa.String(100), nullable=True),
            sa.Column("last_login_at", sa.DateTime(), nullable=True),
            _created_at(),
            _updated_at(),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            _created_at(),
        )

    if "permissions" not in existing_tables:
        op.create_table(
            "permissions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(128), nullable=False, unique=True),
            sa.Column("name", sa.String(128), nullable=False),
            _created_at(),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        )

    if "role_permissions" not in existing_tables:
        op.create_table(
            "role_permissions",
            sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
        )

    # Organizations
    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("industry", sa.String(100), nullable=True),
            sa.Column("size", sa.String(50), nullable=True),
            sa.Column("address", sa.Text(), nullable=True),
            sa.Column("phone", sa.String(50), nullable=True),
            sa.Column("website", sa.String(255), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="active"),
            sa.Column("license_type", sa.String(50), nullable=False, server_default="starter"),
            sa.Column("license_count", sa.Integer(), nullable=False, server_default="5"),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("trial_ends_at", sa.DateTime(), nullable=True),
            sa.Column("custom_domain", sa.String(255), nullable=True),
            sa.Column("allowed_email_domains", sa.JSON(), nullable=True),
            sa.Column("features", sa.JSON(), nullable=True),
            sa.Column("settings", sa.JSON(), nullable=True),
            _created_at(),
            _updated_at(),
        )
        op.create_index("idx_organizations_status", "organizations", ["status"])
        op.create_index("idx_organizations_license_type", "organizations", ["license_type"])

    if "audit_events" not in existing_tables:
        op.create_table(
            "audit_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            _created_at(),
            sa.Column("request_id", sa.String(64), nullable=True),
            _org_fk(nullable=True, ondelete="SET NULL"),
            _user_fk("actor_user_id"),
            sa.Column("actor_user_email", sa.String(320), nullable=True),
            sa.Column("action", sa.String(128), nullable=False),
            sa.Column("category", sa.String(32), nullable=False, server_default="Other"),
            sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
            sa.Column("entity_type", sa.String(128), nullable=True),
            sa.Column("entity_id", sa.String(128), nullable=True),
            sa.Column("reason", sa.String(512), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(45), nullable=True),
        )
        op.create_index("ix_audit_events_org_created", "audit_events", ["organization_id", "created_at"])
        op.create_index("ix_audit_events_action", "audit_events", ["action"])

    if "organization_members" not in existing_tables:
        op.create_table(
            "organization_members",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            _user_fk("user_id", ondelete="CASCADE", nullable=False),
            sa.Column("role", sa.String(50), nullable=False, server_default="member"),
            sa.Column("joined_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("user_id", name="uq_organization_members_user"),
        )
        op.create_index("idx_organization_members_org", "organization_members", ["organization_id"])

    if "invitations" not in existing_tables:
        op.create_table(
            "invitations",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("email", sa.String(320), nullable=False),
            sa.Column("role", sa.String(50), nullable=False, server_default="member"),
            sa.Column("token", sa.String(64), nullable=False, unique=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            _user_fk("invited_by_user_id"),
            sa.Column("invited_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_invitations_org_status", "invitations", ["organization_id", "status"])

    if "insurance_policies" not in existing_tables:
        op.create_table(
            "insurance_policies",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("provider", sa.String(255), nullable=False),
            sa.Column("policy_number", sa.String(100), nullable=False),
            sa.Column("coverage_type", sa.String(100), nullable=False),
            sa.Column("coverage_amount", sa.String(50), nullable=True),
            sa.Column("deductible", sa.String(50), nullable=True),
            sa.Column("contact_name", sa.String(255), nullable=True),
            sa.Column("contact_email", sa.String(255), nullable=True),
            sa.Column("contact_phone", sa.String(50), nullable=True),
            sa.Column("start_date", sa.Date(), nullable=False),
            sa.Column("end_date", sa.Date(), nullable=False),
            sa.Column("claims_contact", sa.String(255), nullable=True),
            sa.Column("claims_phone", sa.String(50), nullable=True),
            sa.Column("claims_email", sa.String(255), nullable=True),
            sa.Column("additional_notes", sa.Text(), nullable=True),
            _created_at(),
            _updated_at(),
        )
        op.create_index("idx_insurance_policies_org", "insurance_policies", ["organization_id"])

    if "organization_limits" not in existing_tables:
        op.create_table(
            "organization_limits",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "organization_id",
                sa.Integer(),
                sa.ForeignKey("organizations.id", ondelete="CASCADE"),
                nullable=False,
                unique=True,
            ),
            sa.Column("max_users", sa.Integer(), nullable=False, server_default="5"),
            sa.Column("max_storage_mb", sa.Integer(), nullable=False, server_default="1024"),
            sa.Column("current_storage_bytes", sa.BigInteger(), nullable=False, server_default="0"),
            sa.Column("max_incidents", sa.Integer(), nullable=True),
            sa.Column("max_assets", sa.Integer(), nullable=True),
            sa.Column("max_runbooks", sa.Integer(), nullable=True),
            sa.Column("max_templates", sa.Integer(), nullable=True),
            sa.Column("api_rate_limit", sa.Integer(), nullable=True, server_default="1000"),
            sa.Column("api_calls_this_hour", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("api_reset_at", sa.DateTime(), nullable=True),
            _created_at(),
            _updated_at(),
        )

    # Platform administration
    if "system_settings" not in existing_tables:
        op.create_table(
            "system_settings",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(100), nullable=False, unique=True),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("data_type", sa.String(20), nullable=False, server_default="string"),
            sa.Column("category", sa.String(50), nullable=False, server_default="general"),
            _user_fk("updated_by_user_id"),
            _created_at(),
            _updated_at(),
        )

    if "system_api_keys" not in existing_tables:
        op.create_table(
            "system_api_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
            sa.Column("key_prefix", sa.String(16), nullable=False),
            sa.Column("permissions", sa.JSON(), nullable=False),
            _org_fk(nullable=True),
            _user_fk("created_by_user_id"),
            sa.Column("last_used_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            sa.Column("revoked_at", sa.DateTime(), nullable=True),
        )

    # Runbooks (before incidents, which may reference one)
    if "runbooks" not in existing_tables:
        op.create_table(
            "runbooks",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(nullable=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("classification", sa.String(50), nullable=True),
            sa.Column("is_template", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("version", sa.String(20), nullable=False, server_default="1.0"),
            _user_fk("created_by_user_id"),
            _created_at(),
            _updated_at(),
        )
        op.create_index("idx_runbooks_org", "runbooks", ["organization_id"])

    if "runbook_steps" not in existing_tables:
        op.create_table(
            "runbook_steps",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("runbook_id", sa.Integer(), sa.ForeignKey("runbooks.id", ondelete="CASCADE"), nullable=False),
            sa.Column("phase", sa.String(20), nullable=False),
            sa.Column("step_number", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("responsible_role", sa.String(100), nullable=True),
            _user_fk("assigned_to_user_id"),
            sa.Column("estimated_duration", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("is_critical", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("tools", sa.Text(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
        )
        op.create_index("idx_runbook_steps_runbook", "runbook_steps", ["runbook_id", "phase", "step_number"])

    # Assets
    if "assets" not in existing_tables:
        op.create_table(
            "assets",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("type", sa.String(50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("identifier", sa.String(255), nullable=True),
            sa.Column("primary_contact_name", sa.String(255), nullable=True),
            sa.Column("primary_contact_email", sa.String(255), nullable=True),
            sa.Column("primary_contact_phone", sa.String(50), nullable=True),
            sa.Column("secondary_contact_name", sa.String(255), nullable=True),
            sa.Column("secondary_contact_email", sa.String(255), nullable=True),
            sa.Column("secondary_contact_phone", sa.String(50), nullable=True),
            sa.Column("vendor", sa.String(255), nullable=True),
            sa.Column("purchase_date", sa.Date(), nullable=True),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            sa.Column("value", sa.String(50), nullable=True),
            sa.Column("must_contact", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("criticality", sa.String(20), nullable=True),
            sa.Column("location", sa.String(255), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _user_fk("created_by_user_id"),
            _created_at(),
            _updated_at(),
            sa.Column("deleted_at", sa.DateTime(), nullable=True),
        )
        op.create_index("idx_assets_org_deleted", "assets", ["organization_id", "deleted_at"])
        op.create_index("idx_assets_type", "assets", ["type"])
        op.create_index("idx_assets_criticality", "assets", ["criticality"])

    if "asset_groups" not in existing_tables:
        op.create_table(
            "asset_groups",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("type", sa.String(20), nullable=False, server_default="custom"),
            sa.Column("parent_group_id", sa.Integer(), sa.ForeignKey("asset_groups.id", ondelete="SET NULL"), nullable=True),
            sa.Column("rules", sa.JSON(), nullable=True),
            sa.Column("is_dynamic", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("icon", sa.String(50), nullable=True),
            sa.Column("color", sa.String(7), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("member_count", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("organization_id", "name", name="uq_asset_groups_org_name"),
        )
        op.create_index("idx_asset_groups_parent", "asset_groups", ["parent_group_id"])

    if "asset_group_members" not in existing_tables:
        op.create_table(
            "asset_group_members",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("asset_group_id", sa.Integer(), sa.ForeignKey("asset_groups.id", ondelete="CASCADE"), nullable=False),
            sa.Column("asset_id", sa.Integer(), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
            _user_fk("added_by_user_id"),
            sa.Column("added_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.UniqueConstraint("asset_group_id", "asset_id", name="uq_asset_group_members"),
        )
        op.create_index("idx_asset_group_members_asset", "asset_group_members", ["asset_id"])

    # Incidents
    if "incidents" not in existing_tables:
        op.create_table(
            "incidents",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("reference_number", sa.String(50), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("classification", sa.String(30), nullable=False),
            sa.Column("severity", sa.String(20), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="open"),
            sa.Column("detected_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("contained_at", sa.DateTime(), nullable=True),
            sa.Column("eradicated_at", sa.DateTime(), nullable=True),
            sa.Column("recovered_at", sa.DateTime(), nullable=True),
            sa.Column("closed_at", sa.DateTime(), nullable=True),
            sa.Column("detection_details", sa.Text(), nullable=True),
            sa.Column("containment_details", sa.Text(), nullable=True),
            sa.Column("eradication_details", sa.Text(), nullable=True),
            sa.Column("recovery_details", sa.Text(), nullable=True),
            sa.Column("post_incident_notes", sa.Text(), nullable=True),
            sa.Column("stakeholder_comms", sa.Text(), nullable=True),
            _user_fk("reported_by_user_id"),
            _user_fk("assigned_to_user_id"),
            sa.Column("runbook_id", sa.Integer(), sa.ForeignKey("runbooks.id", ondelete="SET NULL"), nullable=True),
            sa.Column("estimated_impact", sa.Text(), nullable=True),
            sa.Column("impact_level", sa.String(20), nullable=True),
            sa.Column("affected_users", sa.Integer(), nullable=True),
            sa.Column("lessons_learned", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("organization_id", "reference_number", name="uq_incidents_org_reference"),
        )
        op.create_index("idx_incidents_org_status", "incidents", ["organization_id", "status"])
        op.create_index("idx_incidents_severity", "incidents", ["severity"])
        op.create_index("idx_incidents_detected", "incidents", ["detected_at"])

    if "incident_assets" not in existing_tables:
        op.create_table(
            "incident_assets",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("incident_id", sa.Integer(), sa.ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False),
            sa.Column("asset_id", sa.Integer(), sa.ForeignKey("assets.id", ondelete="CASCADE"), nullable=False),
            sa.Column("affected_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("impact", sa.Text(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="affected"),
            sa.UniqueConstraint("incident_id", "asset_id", name="uq_incident_assets"),
        )

    if "incident_evidence" not in existing_tables:
        op.create_table(
            "incident_evidence",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("incident_id", sa.Integer(), sa.ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False),
            sa.Column("phase", sa.String(20), nullable=True),
            sa.Column("file_name", sa.String(255), nullable=False),
            sa.Column("storage_key", sa.String(512), nullable=False),
            sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("content_type", sa.String(128), nullable=True),
            sa.Column("sha256", sa.String(64), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            _user_fk("uploaded_by_user_id"),
            sa.Column("uploaded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_incident_evidence_incident", "incident_evidence", ["incident_id"])

    # Runbook executions
    if "runbook_executions" not in existing_tables:
        op.create_table(
            "runbook_executions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("runbook_id", sa.Integer(), sa.ForeignKey("runbooks.id", ondelete="CASCADE"), nullable=False),
            sa.Column("incident_id", sa.Integer(), sa.ForeignKey("incidents.id", ondelete="SET NULL"), nullable=True),
            _org_fk(),
            _user_fk("executor_user_id"),
            sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
            sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("paused_at", sa.DateTime(), nullable=True),
            sa.Column("resumed_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("paused_duration", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_duration", sa.Integer(), nullable=True),
            sa.Column("total_steps", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_steps", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("notes", sa.Text(), nullable=True),
            _created_at(),
            _updated_at(),
        )
        op.create_index("idx_runbook_executions_org_status", "runbook_executions", ["organization_id", "status"])
        op.create_index("idx_runbook_executions_runbook", "runbook_executions", ["runbook_id"])

    if "step_executions" not in existing_tables:
        op.create_table(
            "step_executions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("execution_id", sa.Integer(), sa.ForeignKey("runbook_executions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("step_id", sa.Integer(), sa.ForeignKey("runbook_steps.id", ondelete="SET NULL"), nullable=True),
            sa.Column("step_index", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("duration", sa.Integer(), nullable=True),
            sa.Column("notes", sa.Text(), nullable=True),
            _user_fk("executed_by_user_id"),
            _updated_at(),
        )
        op.create_index("idx_step_executions_execution", "step_executions", ["execution_id", "step_index"])

    if "execution_evidence" not in existing_tables:
        op.create_table(
            "execution_evidence",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("execution_id", sa.Integer(), sa.ForeignKey("runbook_executions.id", ondelete="CASCADE"), nullable=False),
            sa.Column("step_id", sa.Integer(), sa.ForeignKey("runbook_steps.id", ondelete="SET NULL"), nullable=True),
            sa.Column("file_name", sa.String(255), nullable=False),
            sa.Column("storage_key", sa.String(512), nullable=False),
            sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("content_type", sa.String(128), nullable=True),
            sa.Column("sha256", sa.String(64), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            _user_fk("uploaded_by_user_id"),
            sa.Column("uploaded_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_execution_evidence_step", "execution_evidence", ["execution_id", "step_id"])

    # Tags
    if "tags" not in existing_tables:
        op.create_table(
            "tags",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("name", sa.String(50), nullable=False),
            sa.Column("category", sa.String(50), nullable=False, server_default="custom"),
            sa.Column("color", sa.String(7), nullable=False, server_default="#6B7280"),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
            _user_fk("created_by_user_id"),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("organization_id", "name", name="uq_tags_org_name"),
        )
        op.create_index("idx_tags_category", "tags", ["category"])

    if "taggables" not in existing_tables:
        op.create_table(
            "taggables",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("tag_id", sa.Integer(), sa.ForeignKey("tags.id", ondelete="CASCADE"), nullable=False),
            sa.Column("taggable_type", sa.String(50), nullable=False),
            sa.Column("taggable_id", sa.Integer(), nullable=False),
            _org_fk(),
            _created_at(),
            sa.UniqueConstraint("tag_id", "taggable_type", "taggable_id", name="uq_taggables_tag_entity"),
        )
        op.create_index("idx_taggables_entity", "taggables", ["taggable_type", "taggable_id"])

    if "tag_policies" not in existing_tables:
        op.create_table(
            "tag_policies",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column("entity_type", sa.String(50), nullable=False),
            sa.Column("required_tags", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
        )
        op.create_index("idx_tag_policies_org_entity", "tag_policies", ["organization_id", "entity_type"])

    # System content
    if "system_dropdowns" not in existing_tables:
        op.create_table(
            "system_dropdowns",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("category", sa.String(50), nullable=False),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("options", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("allow_custom_values", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _user_fk("created_by_user_id"),
            _user_fk("updated_by_user_id"),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("category", "name", name="uq_system_dropdowns_category_name"),
        )
        op.create_index("idx_system_dropdowns_category", "system_dropdowns", ["category"])

    if "organization_dropdowns" not in existing_tables:
        op.create_table(
            "organization_dropdowns",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column(
                "system_dropdown_id",
                sa.Integer(),
                sa.ForeignKey("system_dropdowns.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("category", sa.String(50), nullable=False),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("options", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("allow_custom_values", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _user_fk("created_by_user_id"),
            _user_fk("updated_by_user_id"),
            _created_at(),
            _updated_at(),
            sa.UniqueConstraint("organization_id", "category", "name", name="uq_org_dropdowns_org_category_name"),
        )
        op.create_index("idx_org_dropdowns_org", "organization_dropdowns", ["organization_id"])

    if "default_tag_sets" not in existing_tables:
        op.create_table(
            "default_tag_sets",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("tag_set", sa.JSON(), nullable=False),
            sa.Column("entity_types", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_required", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            _user_fk("created_by_user_id"),
            _user_fk("updated_by_user_id"),
            _created_at(),
            _updated_at(),
        )
        op.create_index("idx_default_tag_sets_active", "default_tag_sets", ["is_active"])
        op.create_index("idx_default_tag_sets_required", "default_tag_sets", ["is_required"])

    if "system_templates" not in existing_tables:
        op.create_table(
            "system_templates",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("category", sa.String(50), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("variables", sa.JSON(), nullable=False),
            sa.Column("tags", sa.JSON(), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("version", sa.String(20), nullable=False, server_default="1.0"),
            _user_fk("created_by_user_id"),
            _user_fk("updated_by_user_id"),
            _created_at(),
            _updated_at(),
        )
        op.create_index("idx_system_templates_category", "system_templates", ["category"])
        op.create_index("idx_system_templates_active", "system_templates", ["is_active"])

    if "template_usage" not in existing_tables:
        op.create_table(
            "template_usage",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("template_id", sa.Integer(), sa.ForeignKey("system_templates.id", ondelete="CASCADE"), nullable=False),
            _org_fk(),
            _user_fk("user_id"),
            sa.Column("usage_type", sa.String(50), nullable=False),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("used_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_template_usage_template", "template_usage", ["template_id"])
        op.create_index("idx_template_usage_org", "template_usage", ["organization_id"])

    # Communications
    if "communication_templates" not in existing_tables:
        op.create_table(
            "communication_templates",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(nullable=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("category", sa.String(100), nullable=False),
            sa.Column("tags", sa.JSON(), nullable=True),
            sa.Column("subject", sa.String(255), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            _user_fk("created_by_user_id"),
            _created_at(),
            _updated_at(),
        )
        op.create_index(
            "idx_communication_templates_org_category", "communication_templates", ["organization_id", "category"]
        )

    if "communication_template_versions" not in existing_tables:
        op.create_table(
            "communication_template_versions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "template_id",
                sa.Integer(),
                sa.ForeignKey("communication_templates.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("subject", sa.String(255), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("change_note", sa.String(512), nullable=True),
            _user_fk("created_by_user_id"),
            _created_at(),
            sa.UniqueConstraint("template_id", "version", name="uq_template_versions"),
        )

    if "communication_logs" not in existing_tables:
        op.create_table(
            "communication_logs",
            sa.Column("id", sa.Integer(), primary_key=True),
            _org_fk(),
            sa.Column(
                "template_id",
                sa.Integer(),
                sa.ForeignKey("communication_templates.id", ondelete="SET NULL"),
                nullable=True,
            ),
            sa.Column("incident_id", sa.Integer(), sa.ForeignKey("incidents.id", ondelete="SET NULL"), nullable=True),
            sa.Column("method", sa.String(20), nullable=False),
            sa.Column("recipients", sa.JSON(), nullable=False),
            sa.Column("subject", sa.String(255), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("missing_variables", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(20), nullable=False, server_default="logged"),
            _user_fk("sent_by_user_id"),
            sa.Column("sent_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("idx_communication_logs_org_sent", "communication_logs", ["organization_id", "sent_at"])

    # Tabletop exercises
    if "tabletop_exercises" not in existing_tables:
        op.create_table(
            "tabletop_exercises",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("title", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("scenario", sa.Text(), nullable=False),
            sa.Column("difficulty", sa.String(20), nullable=False, server_default="beginner"),
            sa.Column("estimated_duration", sa.Integer(), nullable=False, server_default="30"),
            sa.Column("category", sa.String(50), nullable=True),
            sa.Column("objectives", sa.JSON(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _user_fk("created_by_user_id"),
            _created_at(),
            _updated_at(),
        )

    if "exercise_questions" not in existing_tables:
        op.create_table(
            "exercise_questions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "exercise_id",
                sa.Integer(),
                sa.ForeignKey("tabletop_exercises.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("question_number", sa.Integer(), nullable=False),
            sa.Column("question", sa.Text(), nullable=False),
            sa.Column("options", sa.JSON(), nullable=False),
            sa.Column("correct_answer", sa.String(50), nullable=False),
            sa.Column("explanation", sa.Text(), nullable=True),
            sa.Column("points", sa.Integer(), nullable=False, server_default="1"),
            sa.UniqueConstraint("exercise_id", "question_number", name="uq_exercise_question_number"),
        )

    if "exercise_completions" not in existing_tables:
        op.create_table(
            "exercise_completions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column(
                "exercise_id",
                sa.Integer(),
                sa.ForeignKey("tabletop_exercises.id", ondelete="CASCADE"),
                nullable=False,
            ),
            _user_fk("user_id", ondelete="CASCADE", nullable=False),
            _org_fk(),
            sa.Column("started_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("score", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_score", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("answers", sa.JSON(), nullable=True),
            sa.Column("progress", sa.JSON(), nullable=True),
            sa.Column("certificate_id", sa.String(50), nullable=True),
        )
        op.create_index("idx_exercise_completions_org", "exercise_completions", ["organization_id", "completed_at"])
        op.create_index("idx_exercise_completions_user", "exercise_completions", ["user_id", "exercise_id"])


# Children before parents
_TABLES_DROP_ORDER = (
    "exercise_completions",
    "exercise_questions",
    "tabletop_exercises",
    "communication_logs",
    "communication_template_versions",
    "communication_templates",
    "template_usage",
    "system_templates",
    "default_tag_sets",
    "organization_dropdowns",
    "system_dropdowns",
    "tag_policies",
    "taggables",
    "tags",
    "execution_evidence",
    "step_executions",
    "runbook_executions",
    "incident_evidence",
    "incident_assets",
    "incidents",
    "asset_group_members",
    "asset_groups",
    "assets",
    "runbook_steps",
    "runbooks",
    "system_api_keys",
    "system_settings",
    "organization_limits",
    "insurance_policies",
    "invitations",
    "organization_members",
    "audit_events",
    "organizations",
    "role_permissions",
    "user_roles",
    "permissions",
    "roles",
    "users",
)


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = set(sa.inspect(conn).get_table_names())
    for name in _TABLES_DROP_ORDER:
        if name in existing_tables:
            op.drop_table(name)
