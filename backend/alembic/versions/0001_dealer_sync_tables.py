"""dealer sync tables: evento, snapshot dealers, confirmations, sync control

Revision ID: 0001_dealer_sync_tables
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_dealer_sync_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not inspector.has_table("co_eventoscargaproceso"):
        op.create_table(
            "co_eventoscargaproceso",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("proceso", sa.String(length=64), nullable=False),
            sa.Column("id_carga", sa.String(length=64), nullable=False),
            sa.Column("fecha_carga", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("registros", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("estatus", sa.String(length=32), nullable=True),
            sa.Column("actual", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("dealers_totales", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("dealers_sincronizados", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("porc_dealers_sinc", sa.Float(), nullable=False, server_default="0"),
            sa.Column("fecha_registro", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("usuario_registro", sa.String(length=128), nullable=False, server_default="system"),
            sa.Column("fecha_modificacion", sa.DateTime(), nullable=True),
            sa.Column("usuario_modificacion", sa.String(length=128), nullable=True),
        )

    if not inspector.has_table("co_eventoscargasnapshotdealers"):
        op.create_table(
            "co_eventoscargasnapshotdealers",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("evento_carga_proceso_id", sa.Integer(), sa.ForeignKey("co_eventoscargaproceso.id"), nullable=False),
            sa.Column("dealer_bac", sa.String(length=32), nullable=False),
            sa.Column("nombre_dealer", sa.String(length=255), nullable=True),
            sa.Column("dms", sa.String(length=64), nullable=True),
            sa.Column("url_webhook", sa.String(length=512), nullable=True),
            sa.Column("secret_key", sa.String(length=255), nullable=True),
            sa.Column("estado_webhook", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("intentos_webhook", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("ultimo_intento_webhook", sa.DateTime(), nullable=True),
            sa.Column("ultimo_error_webhook", sa.Text(), nullable=True),
            sa.Column("token_confirmacion", sa.String(length=64), nullable=True),
            sa.Column("fecha_sincronizacion", sa.DateTime(), nullable=True),
            sa.Column("fecha_registro", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("fecha_modificacion", sa.DateTime(), nullable=True),
            sa.Column("usuario_modificacion", sa.String(length=128), nullable=True),
        )

    if not inspector.has_table("co_sincronizacioncargaprocesodealer"):
        op.create_table(
            "co_sincronizacioncargaprocesodealer",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("evento_carga_proceso_id", sa.Integer(), sa.ForeignKey("co_eventoscargaproceso.id"), nullable=False),
            sa.Column("proceso", sa.String(length=64), nullable=False),
            sa.Column("dms_origen", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("dealer_bac", sa.String(length=32), nullable=False),
            sa.Column("nombre_dealer", sa.String(length=255), nullable=False, server_default=""),
            sa.Column("fecha_sincronizacion", sa.DateTime(), nullable=False),
            sa.Column("registros_sincronizados", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("token_confirmacion", sa.String(length=64), nullable=False),
            sa.Column("fecha_registro", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("usuario_registro", sa.String(length=128), nullable=False, server_default="system"),
            sa.UniqueConstraint(
                "evento_carga_proceso_id", "dealer_bac", name="uq_co_sinccargaprocesodealer_evento_dealer"
            ),
        )

    if not inspector.has_table("co_eventoscargasinccontrol"):
        op.create_table(
            "co_eventoscargasinccontrol",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("process_type", sa.String(length=64), nullable=False),
            sa.Column("id_carga", sa.String(length=64), nullable=False),
            sa.Column("fecha_carga", sa.DateTime(), nullable=True),
            sa.Column("evento_carga_proceso_id", sa.Integer(), sa.ForeignKey("co_eventoscargaproceso.id"), nullable=True),
            sa.Column("process_id", sa.String(length=32), nullable=True),
            sa.Column("job_id", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
            sa.Column("active_key", sa.String(length=160), nullable=True),
            sa.Column("fecha_inicio", sa.DateTime(), nullable=True),
            sa.Column("fecha_fin", sa.DateTime(), nullable=True),
            sa.Column("webhooks_totales", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("webhooks_procesados", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("webhooks_fallidos", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("webhooks_omitidos", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("error_message", sa.String(length=1000), nullable=True),
            sa.Column("error_details", sa.Text(), nullable=True),
            sa.Column("fecha_registro", sa.DateTime(), nullable=False, server_default=sa.func.now()),
            sa.Column("usuario_registro", sa.String(length=128), nullable=False, server_default="system"),
            sa.Column("fecha_modificacion", sa.DateTime(), nullable=True),
            sa.Column("usuario_modificacion", sa.String(length=128), nullable=True),
            sa.UniqueConstraint("active_key", name="uq_co_eventoscargasinccontrol_active_key"),
        )

    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_co_eventoscargaproceso_proceso_carga ON co_eventoscargaproceso (proceso, id_carga)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_co_eventoscargaproceso_actual ON co_eventoscargaproceso (actual)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_co_snapshotdealers_evento_url "
        "ON co_eventoscargasnapshotdealers (evento_carga_proceso_id, url_webhook)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_co_eventoscargasnapshotdealers_estado_webhook "
        "ON co_eventoscargasnapshotdealers (estado_webhook)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_co_sincronizacioncargaprocesodealer_dealer_bac "
        "ON co_sincronizacioncargaprocesodealer (dealer_bac)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_co_sinccontrol_process_carga_status "
        "ON co_eventoscargasinccontrol (process_type, id_carga, status)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS ix_co_eventoscargasinccontrol_status ON co_eventoscargasinccontrol (status)")
    op.execute(
        "CREATE INDEX IF NOT EXISTS ix_co_eventoscargasinccontrol_process_id ON co_eventoscargasinccontrol (process_id)"
    )


def downgrade() -> None:
    op.drop_index("ix_co_eventoscargasinccontrol_process_id", table_name="co_eventoscargasinccontrol")
    op.drop_index("ix_co_eventoscargasinccontrol_status", table_name="co_eventoscargasinccontrol")
    op.drop_index("ix_co_sinccontrol_process_carga_status", table_name="co_eventoscargasinccontrol")
    op.drop_index("ix_co_sincronizacioncargaprocesodealer_dealer_bac", table_name="co_sincronizacioncargaprocesodealer")
    op.drop_index("ix_co_eventoscargasnapshotdealers_estado_webhook", table_name="co_eventoscargasnapshotdealers")
    op.drop_index("ix_co_snapshotdealers_evento_url", table_name="co_eventoscargasnapshotdealers")
    op.drop_index("ix_co_eventoscargaproceso_actual", table_name="co_eventoscargaproceso")
    op.drop_index("ix_co_eventoscargaproceso_proceso_carga", table_name="co_eventoscargaproceso")
    op.drop_table("co_eventoscargasinccontrol")
    op.drop_table("co_sincronizacioncargaprocesodealer")
    op.drop_table("co_eventoscargasnapshotdealers")
    op.drop_table("co_eventoscargaproceso")
