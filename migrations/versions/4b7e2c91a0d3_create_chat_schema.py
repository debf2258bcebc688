"""create chat schema

Revision ID: 4b7e2c91a0d3
Revises:
Create Date: 2026-10-19 09:12:44.104327

"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '4b7e2c91a0d3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')

    # Step 1: Create the function (required before triggers)
    op.execute('''
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = NOW();
            RETURN NEW;
        END;
        $$ language 'plpgsql'
    ''')

    # Step 2: Create tables
    op.execute("""
        CREATE TABLE IF NOT EXISTS conversations (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            type VARCHAR(10) NOT NULL CHECK (type IN ('DIRECT', 'GROUP')),
            name VARCHAR(255),
            created_by VARCHAR(255) NOT NULL,
            direct_key VARCHAR(520),
            message_seq BIGINT NOT NULL DEFAULT 0,
            last_message_at TIMESTAMP WITH TIME ZONE,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            deleted_at TIMESTAMP WITH TIME ZONE,
            CHECK ((type = 'DIRECT') = (direct_key IS NOT NULL))
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS participants (
            conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            user_id VARCHAR(255) NOT NULL,
            role VARCHAR(10) NOT NULL DEFAULT 'MEMBER' CHECK (role IN ('OWNER', 'ADMIN', 'MEMBER')),
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            joined_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            last_read_at TIMESTAMP WITH TIME ZONE,
            PRIMARY KEY (conversation_id, user_id)
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS messages (
            id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
            conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            seq BIGINT NOT NULL,
            sender_id VARCHAR(255) NOT NULL,
            content TEXT NOT NULL,
            type VARCHAR(10) NOT NULL DEFAULT 'TEXT' CHECK (type IN ('TEXT', 'IMAGE', 'FILE', 'SYSTEM')),
            status VARCHAR(10) NOT NULL DEFAULT 'SENT' CHECK (status IN ('PENDING', 'SENT', 'DELIVERED', 'READ')),
            delivered_to JSONB NOT NULL DEFAULT '{}'::jsonb,
            read_by JSONB NOT NULL DEFAULT '{}'::jsonb,
            message_timestamp TIMESTAMP WITH TIME ZONE NOT NULL,
            created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
            CONSTRAINT uq_messages_conversation_seq UNIQUE (conversation_id, seq)
        )
    """)

    # Step 3: Create indexes
    op.execute('''
        CREATE UNIQUE INDEX IF NOT EXISTS uq_conversations_direct_key_live
            ON conversations(direct_key) WHERE deleted_at IS NULL
    ''')
    op.execute('CREATE INDEX IF NOT EXISTS idx_conversations_deleted_at ON conversations(deleted_at)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_participants_user ON participants(user_id) WHERE is_active')
    op.execute('CREATE INDEX IF NOT EXISTS idx_messages_sender ON messages(sender_id)')

    # Step 4: Create triggers (only after tables exist)
    op.execute('''
        CREATE TRIGGER update_conversations_updated_at
            BEFORE UPDATE ON conversations
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
    ''')

    op.execute('''
        CREATE TRIGGER update_messages_updated_at
            BEFORE UPDATE ON messages
            FOR EACH ROW EXECUTE FUNCTION update_updated_at_column()
    ''')


def downgrade() -> None:
    """Downgrade schema."""
    op.execute('DROP TABLE IF EXISTS messages')
    op.execute('DROP TABLE IF EXISTS participants')
    op.execute('DROP TABLE IF EXISTS conversations')
    op.execute('DROP FUNCTION IF EXISTS update_updated_at_column()')
