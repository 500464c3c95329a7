from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    conversation_id: str | None = Field(default=None, max_length=200)
    caller_id: str = Field(min_length=1, max_length=200)
    agent_id: str = Field(min_length=1, max_length=200)
    text: str = Field(min_length=1, max_length=6000)


class ChatResponse(BaseModel):
    reply_text: str
    conversation_id: str
    tools_invoked: list[str] = Field(default_factory=list)
    language: str


class ConversationSummary(BaseModel):
    id: str
    agent_id: str
    thread_id: str | None = None
    channel: str
    status: str
    last_message_at: str | None = None


class MessageRow(BaseModel):
    id: str
    sender: str
    content: str
    created_at: str | None = None
