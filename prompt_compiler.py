# prompt_compiler.py
"""
Builds the tool-aware system instruction and the [system, user] message pair.

The instruction carries a strict output contract: either exactly one JSON
tool-call object and nothing else, or plain prose with no JSON at all. The
extractor relies on that contract.
"""

from typing import Dict, List

from catalog import ToolDescriptor


NO_DESCRIPTION = "No description provided."

ROLE_PREAMBLE = (
    "You are a helpful, expert assistant that answers user queries by utilizing external tools "
    "whenever one of them fits, rather than answering from your own knowledge. "
    "Analyze the user's request and decide whether one of the AVAILABLE TOOLS is appropriate. "
    "If an appropriate tool exists, prefer calling it over answering yourself."
)

EXCLUSIVITY_RULE = (
    "**INSTRUCTION:** If a tool is to be used, your ENTIRE response MUST be exactly one valid JSON "
    "object matching the Tool Use Request Format. DO NOT output any other text, explanation or "
    "markdown around it. If NONE of the AVAILABLE TOOLS is relevant, you MUST NOT output any JSON "
    "or tool call at all. Respond only with plain conversational text."
)

TOOL_CALL_SCHEMA = (
    "{\n"
    '  "tool_name": "<name_of_tool_to_use>",\n'
    '  "tool_arguments": {\n'
    '    "<argument_name>": "<value>",\n'
    "    ...\n"
    "  }\n"
    "}"
)


def render_tool(index: int, tool: ToolDescriptor) -> str:
    lines = [
        f"{index}.  **Tool Name: {tool.name}**",
        f"    * Description: {tool.description or NO_DESCRIPTION}",
    ]
    args = tool.arguments()
    if args:
        lines.append("    * Arguments:")
        for name, type_tag, desc in args:
            lines.append(f"        * {name} ({type_tag}): {desc}".rstrip())
    else:
        lines.append("    * Arguments: None.")
    return "\n".join(lines)


def compile_system_prompt(tools: List[ToolDescriptor]) -> str:
    parts = [
        ROLE_PREAMBLE,
        EXCLUSIVITY_RULE,
        "**Tool Use Request Format (MANDATORY JSON SCHEMA ONLY WHEN RETURNING A TOOL CALL):**\n" + TOOL_CALL_SCHEMA,
        "**AVAILABLE TOOLS:**",
    ]
    # Catalog order, 1-indexed
    parts.extend(render_tool(i, tool) for i, tool in enumerate(tools, start=1))
    return "\n\n".join(parts) + "\n"


def compile_messages(tools: List[ToolDescriptor], user_message: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": compile_system_prompt(tools)},
        {"role": "user", "content": user_message},
    ]
