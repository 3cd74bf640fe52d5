from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20261019_01_custody'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'cheques',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cheque_no', sa.String(64), nullable=False, unique=True, index=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('bank', sa.String(191), nullable=False),
        sa.Column('branch', sa.String(191), nullable=False),
        sa.Column('payer_name', sa.String(191), nullable=False),
        sa.Column('payee_name', sa.String(191), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False, index=True),
        sa.Column('status', sa.String(32), nullable=False, index=True, server_default='SIGNED'),
        sa.Column('initiator_id', sa.String(64), nullable=False, index=True),
        sa.Column('attachments', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'otp_challenges',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cheque_id', sa.Integer(), sa.ForeignKey('cheques.id'), nullable=False, index=True),
        sa.Column('channel', sa.String(16), nullable=False),
        sa.Column('to_contact', sa.String(191), nullable=False),
        sa.Column('code_hash', sa.String(64), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default='PENDING'),
        sa.Column('attempts_remaining', sa.Integer(), nullable=False),
        sa.Column('locked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('issued_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('expires_at', sa.DateTime(), nullable=False, index=True),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('used_by', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(255), nullable=True),
    )
    op.create_index('ix_otp_challenges_cheque_status', 'otp_challenges', ['cheque_id', 'status'])
    op.create_table(
        'override_requests',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cheque_id', sa.Integer(), sa.ForeignKey('cheques.id'), nullable=False, index=True),
        sa.Column('requested_by', sa.String(64), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, index=True, server_default='PENDING'),
        sa.Column('approved_by', sa.String(64), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('rejected_reason', sa.Text(), nullable=True),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_index('ix_override_requests_cheque_status', 'override_requests', ['cheque_id', 'status'])
    op.create_table(
        'handover_records',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cheque_id', sa.Integer(), sa.ForeignKey('cheques.id'), nullable=False, unique=True),
        sa.Column('recipient_name', sa.String(191), nullable=False),
        sa.Column('id_type', sa.String(64), nullable=False),
        sa.Column('id_number', sa.String(64), nullable=False),
        sa.Column('recipient_photo_path', sa.Text(), nullable=False),
        sa.Column('signature_path', sa.Text(), nullable=False),
        sa.Column('handed_by', sa.String(64), nullable=False),
        sa.Column('handed_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('is_override', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('override_id', sa.Integer(), sa.ForeignKey('override_requests.id'), nullable=True),
        sa.Column('override_approved_by', sa.String(64), nullable=True),
        sa.Column('override_reason', sa.Text(), nullable=True),
    )
    op.create_table(
        'custody_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cheque_id', sa.Integer(), sa.ForeignKey('cheques.id'), nullable=False, index=True),
        sa.Column('from_role', sa.String(32), nullable=False),
        sa.Column('to_role', sa.String(32), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('cheque_id', sa.Integer(), sa.ForeignKey('cheques.id'), nullable=True, index=True),
        sa.Column('action', sa.String(64), nullable=False, index=True),
        sa.Column('actor_id', sa.String(64), nullable=True),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('custody_logs')
    op.drop_table('handover_records')
    op.drop_index('ix_override_requests_cheque_status', table_name='override_requests')
    op.drop_table('override_requests')
    op.drop_index('ix_otp_challenges_cheque_status', table_name='otp_challenges')
    op.drop_table('otp_challenges')
    op.drop_table('cheques')
