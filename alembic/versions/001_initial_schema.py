"""初始数据库架构

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# 版本标识符
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # 主访问密钥
    op.create_table(
        "access_keys",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("token_limit", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_access_keys_code", "access_keys", ["code"])
    op.create_index("ix_access_keys_created_at", "access_keys", ["created_at"])

    # 图片密钥
    op.create_table(
        "image_access_keys",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("code", sa.String(100), nullable=False, unique=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("total_images", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("image_limit", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_image_access_keys_code", "image_access_keys", ["code"])
    op.create_index("ix_image_access_keys_created_at", "image_access_keys", ["created_at"])

    # 设备会话
    op.create_table(
        "device_sessions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "key_code",
            sa.String(100),
            sa.ForeignKey("access_keys.code", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_id", sa.String(64), nullable=False),
        sa.Column("device_info", sa.Text(), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        sa.Column("last_seen", sa.DateTime(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_banned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("image_key_code", sa.String(100), nullable=True),
        sa.UniqueConstraint("key_code", "device_id", name="uq_device_sessions_key_device"),
    )
    op.create_index("ix_device_sessions_key_code", "device_sessions", ["key_code"])
    op.create_index("ix_device_sessions_device_id", "device_sessions", ["device_id"])
    op.create_index("ix_device_sessions_last_seen", "device_sessions", ["last_seen"])

    # 学科
    op.create_table(
        "subjects",
        sa.Column("code", sa.String(50), primary_key=True),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("color", sa.String(30), nullable=True),
        sa.Column("icon", sa.String(30), nullable=True),
        sa.Column("prompt_prefix", sa.Text(), nullable=True),
        sa.Column("background_chars", sa.Text(), nullable=True),
        sa.Column("char_opacity", sa.Float(), nullable=True, server_default="0.15"),
        sa.Column("char_size_scale", sa.Float(), nullable=True, server_default="1.0"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("sort_order", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )

    # 年级
    op.create_table(
        "levels",
        sa.Column("code", sa.String(50), primary_key=True),
        sa.Column("label", sa.String(100), nullable=False),
        sa.Column("sort_order", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=True, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )

    # 问答历史
    op.create_table(
        "chat_history",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "key_code",
            sa.String(100),
            sa.ForeignKey("access_keys.code", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("device_id", sa.String(64), nullable=True),
        sa.Column("question", sa.Text(), nullable=False),
        sa.Column("answer", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(50), nullable=False),
        sa.Column("grade_label", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_chat_history_key_code", "chat_history", ["key_code"])
    op.create_index("ix_chat_history_device_id", "chat_history", ["device_id"])
    op.create_index("ix_chat_history_created_at", "chat_history", ["created_at"])

    # 系统配置
    op.create_table(
        "app_config",
        sa.Column("key", sa.String(100), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("app_config")
    op.drop_table("chat_history")
    op.drop_table("levels")
    op.drop_table("subjects")
    op.drop_table("device_sessions")
    op.drop_table("image_access_keys")
    op.drop_table("access_keys")
