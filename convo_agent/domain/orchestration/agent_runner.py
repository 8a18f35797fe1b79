from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional, AsyncIterator, Iterable, Set
import json
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from convo_agent.domain.errors import TransientDependencyError
from convo_agent.domain.models import (
    AgentResult, AgentStreamEvent, MemoryEntry, Message, MessageRole,
    TextDelta, ToolCall, ToolCallCompleted, ToolCallStarted, ToolSpec, new_id
)
from convo_agent.domain.tool.discovery import BaseToolExecutor

logger = structlog.get_logger(__name__)

DEFAULT_AGENT_TYPE = "general"

CONTEXT_GUIDELINES = """CONTEXT AWARENESS GUIDELINES:
- You have access to conversation history and user memories
- Use relevant context from previous interactions to provide personalized responses
- If you reference past conversations or memories, be explicit about what you remember
- If you're unsure about a memory, ask for clarification rather than assuming
- Respect user privacy and don't share memories between different users"""


class AgentProfiles:
    """Instructions per agent type"""
    
    def __init__(self, profiles: Optional[Dict[str, str]] = None):
        self.profiles: Dict[str, str] = {
            "general": "You are a helpful AI assistant with access to conversation history, user memories and remote tools.",
            "research": "You are a research assistant specializing in information gathering and analysis. Use your memory to track research topics and user interests.",
            "code": "You are a coding assistant that helps with programming tasks. Remember user coding preferences, project contexts, and technical discussions.",
            "customer-service": "You are a customer service representative. Remember customer history, preferences, and previous issues to provide personalized support.",
        }
        self.profiles["assistant"] = self.profiles["general"]
        self.profiles["triage"] = self.profiles["general"]
        self.profiles.update(profiles or {})
        
    def known(self, agent_type: str) -> bool:
        return agent_type in self.profiles
        
    def instructions_for(
        self,
        agent_type: str,
        context_aware: bool = False,
        memories: Optional[Iterable[MemoryEntry]] = None
    ) -> str:
        """Base instructions, with memory guidance for context-aware sessions"""
        
        base = self.profiles.get(agent_type) or self.profiles[DEFAULT_AGENT_TYPE]
        if not context_aware:
            return base
            
        sections = [base, CONTEXT_GUIDELINES]
        memory_lines = [f"- [{m.type.value}] {m.content}" for m in memories or []]
        if memory_lines:
            sections.append("RELEVANT MEMORIES:\n" + "\n".join(memory_lines))
            
        return "\n\n".join(sections)


class BaseAgentRunner(ABC):
    """Agent execution engine seen by the streaming relay"""
    
    @abstractmethod
    async def run(
        self,
        instructions: str,
        user_input: str,
        tools: List[ToolSpec],
        history: Optional[List[Message]] = None
    ) -> AgentResult:
        """Single, complete response"""
        pass
        
    @abstractmethod
    def stream(
        self,
        instructions: str,
        user_input: str,
        tools: List[ToolSpec],
        history: Optional[List[Message]] = None
    ) -> AsyncIterator[AgentStreamEvent]:
        """Incremental response events in production order"""
        pass


class ChatModelAgentRunner(BaseAgentRunner):
    """Runs a langchain chat model against the conversation window.

    When a tool executor is configured, tool calls requested by the model
    are executed and their results fed back for up to ``max_tool_rounds``
    round-trips; the last round is answered without tools bound. Calls to
    tools that need approval are reported but not executed, and the reply
    ends there until the user decides. Without an executor no tools are
    bound.
    """
    
    def __init__(
        self,
        chat_model: BaseChatModel,
        approval_required: Optional[Set[str]] = None,
        tool_executor: Optional[BaseToolExecutor] = None,
        max_tool_rounds: int = 5
    ):
        self.chat_model = chat_model
        self.approval_required = approval_required or set()
        self.tool_executor = tool_executor
        self.max_tool_rounds = max_tool_rounds
        
    async def run(self, instructions, user_input, tools, history=None) -> AgentResult:
        messages = self._to_langchain_messages(instructions, user_input, history)
        specs = {tool.name: tool for tool in tools}
        executed: List[ToolCall] = []
        metadata: Dict[str, Any] = {}
        
        for round_number in range(self.max_tool_rounds + 1):
            model = self._model_for_round(tools, round_number)
            try:
                response = await model.ainvoke(messages)
            except Exception as e:
                raise TransientDependencyError("agent_engine", "Chat model invocation failed", cause=e)
                
            metadata = dict(getattr(response, "response_metadata", None) or {})
            calls = [self._to_tool_call(tc) for tc in getattr(response, "tool_calls", None) or []]
            
            if not calls or round_number == self.max_tool_rounds or not self._can_execute(calls):
                return AgentResult(text=self._text_of(response.content), tool_calls=executed + calls, metadata=metadata)
                
            messages.append(self._assistant_turn(response.content, calls))
            for call in calls:
                call.result = await self._execute(call, specs)
                executed.append(call)
                messages.append(self._tool_turn(call))
                
        return AgentResult(tool_calls=executed, metadata=metadata)
        
    async def stream(self, instructions, user_input, tools, history=None) -> AsyncIterator[AgentStreamEvent]:
        messages = self._to_langchain_messages(instructions, user_input, history)
        specs = {tool.name: tool for tool in tools}
        
        for round_number in range(self.max_tool_rounds + 1):
            model = self._model_for_round(tools, round_number)
            
            aggregate = None
            try:
                async for chunk in model.astream(messages):
                    aggregate = chunk if aggregate is None else aggregate + chunk
                    text = self._text_of(chunk.content)
                    if text:
                        yield TextDelta(text=text)
            except Exception as e:
                raise TransientDependencyError("agent_engine", "Chat model stream failed", cause=e)
                
            # Tool call arguments arrive in fragments; they are complete only once aggregated
            calls = [self._to_tool_call(tc) for tc in getattr(aggregate, "tool_calls", None) or []]
            for call in calls:
                yield ToolCallStarted(
                    call_id=call.id,
                    tool_name=call.tool_name,
                    parameters=call.parameters,
                    requires_approval=call.tool_name in self.approval_required
                )
                
            if not calls or round_number == self.max_tool_rounds or not self._can_execute(calls):
                return
                
            messages.append(self._assistant_turn(aggregate.content, calls))
            for call in calls:
                call.result = await self._execute(call, specs)
                yield ToolCallCompleted(call_id=call.id, tool_name=call.tool_name, result=call.result)
                messages.append(self._tool_turn(call))
                
    def _can_execute(self, calls: List[ToolCall]) -> bool:
        if self.tool_executor is None:
            return False
        waiting = [call.tool_name for call in calls if call.tool_name in self.approval_required]
        if waiting:
            logger.info("Tool calls awaiting approval", tools=waiting)
            return False
        return True
        
    def _model_for_round(self, tools: List[ToolSpec], round_number: int):
        if self.tool_executor is None or round_number >= self.max_tool_rounds:
            return self.chat_model
        return self._bind_tools(tools)
        
    async def _execute(self, call: ToolCall, specs: Dict[str, ToolSpec]) -> Any:
        """Run one call; failures become an error result the model can read"""
        
        spec = specs.get(call.tool_name)
        if spec is None or not spec.server_label:
            logger.warning("Model requested an unavailable tool", tool=call.tool_name)
            return {"error": f"Tool {call.tool_name} is not available"}
            
        try:
            return await self.tool_executor.call_tool(spec.server_label, call.tool_name, call.parameters)
        except Exception as e:
            logger.warning("Tool call failed", tool=call.tool_name, label=spec.server_label, error=str(e))
            return {"error": str(e)}
            
    @staticmethod
    def _assistant_turn(content: Any, calls: List[ToolCall]) -> AIMessage:
        return AIMessage(
            content=content or "",
            tool_calls=[
                {"name": call.tool_name, "args": call.parameters, "id": call.id, "type": "tool_call"}
                for call in calls
            ]
        )
        
    @staticmethod
    def _tool_turn(call: ToolCall) -> ToolMessage:
        result = call.result if isinstance(call.result, str) else json.dumps(call.result, default=str)
        return ToolMessage(content=result, tool_call_id=call.id)
        
    def _bind_tools(self, tools: List[ToolSpec]):
        if not tools:
            return self.chat_model
            
        definitions = [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.input_schema or {"type": "object", "properties": {}}
                }
            }
            for tool in tools
        ]
        
        try:
            return self.chat_model.bind_tools(definitions)
        except NotImplementedError:
            logger.warning("Chat model does not support tool binding", tools=len(tools))
            return self.chat_model
            
    @staticmethod
    def _to_langchain_messages(instructions: str, user_input: str, history: Optional[List[Message]]) -> List[BaseMessage]:
        messages: List[BaseMessage] = [SystemMessage(content=instructions)]
        
        for message in history or []:
            if message.role == MessageRole.USER:
                messages.append(HumanMessage(content=message.content))
            elif message.role == MessageRole.AGENT:
                messages.append(AIMessage(content=message.content))
            else:
                messages.append(SystemMessage(content=message.content))
                
        messages.append(HumanMessage(content=user_input))
        return messages
        
    @staticmethod
    def _to_tool_call(tool_call: Dict[str, Any]) -> ToolCall:
        return ToolCall(
            id=tool_call.get("id") or new_id("tc"),
            tool_name=tool_call.get("name") or "unknown",
            parameters=tool_call.get("args") or {}
        )
        
    @staticmethod
    def _text_of(content: Any) -> str:
        """Flatten string or content-block message content to text"""
        
        if isinstance(content, str):
            return content
            
        parts = []
        for item in content or []:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") in ("text", "output_text"):
                parts.append(item.get("text", ""))
        return "".join(parts)
