"""device_sessions 增加最近一次登录结果

Revision ID: 002_device_login_flag
Revises: 001_initial
Create Date: 2026-10-20

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# 版本标识符
revision: str = "002_device_login_flag"
down_revision: Union[str, None] = "001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 已有会话一律视为未登录，需重新登录一次
    op.add_column(
        "device_sessions",
        sa.Column("last_login_ok", sa.Boolean(), nullable=False, server_default=sa.false()),
    )


def downgrade() -> None:
    op.drop_column("device_sessions", "last_login_ok")
