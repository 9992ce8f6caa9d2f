DEFAULT_CONFIG = {
    "base_url": "http://localhost:8931",
    "endpoint": "/mcp",
    "timeout": 30.0,
    "protocol_version": "2024-11-05",
    "client_name": "iterqa-agent",
    "client_version": "0.1.0",
}

# Instruction kind -> MCP tool exposed by the automation backend.
TOOL_MAPPING = {
    "navigate": "browser_navigate",
    "click": "browser_click",
    "fill": "browser_type",
    "select_option": "browser_select_option",
    "screenshot": "browser_take_screenshot",
    "evaluate": "browser_evaluate",
    "wait": "browser_wait_for",
    "wait_for": "browser_wait_for",
    "press_key": "browser_press_key",
    "verify_element_visible": "browser_verify_element_visible",
    "verify_text_visible": "browser_verify_text_visible",
}

SNAPSHOT_TOOL = "browser_snapshot"
SCREENSHOT_TOOL = "browser_take_screenshot"
