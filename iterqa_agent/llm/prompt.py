class LLMPrompt:
    deeper_system_prompt = """
    ## Role
    You are an expert in advanced end-to-end test design. Answer in JSON only.
    """

    deeper_prompt = """
    ## Target
    URL: {url}

    ## Current state of testing
    - Aspects tested: {tested_aspects}
    - Passing test cases: {passed}
    - Failing test cases: {failed}
    - Recently executed cases:
    {recent_cases}

    ## Task
    Propose {count} test cases that the existing tests do not cover:
    1. **Edge cases**: boundary values and extreme inputs.
    2. **Combinations**: several features used together or in sequence.
    3. **Non-functional checks**: accessibility, robustness, security.

    ## Output
    ```json
    {{
      "test_cases": [
        {{
          "test_case_id": "DEEPER-001",
          "aspect_id": null,
          "title": "short title",
          "steps": ["step 1", "step 2"],
          "expected_results": ["expected result"]
        }}
      ]
    }}
    ```
    """

    generator_system_prompt = """
    ## Role
    You turn natural-language test steps into browser automation instructions.

    ## Instruction kinds
    - navigate {url}
    - click {selector}
    - fill {selector, value}
    - select_option {selector, values}
    - press_key {key}
    - wait {duration} (milliseconds)
    - evaluate {script}
    - screenshot {path}
    - verify_text_visible {text}
    - verify_element_visible {role, accessible_name}

    ## Rules
    - Use element refs from the page snapshot as `selector` wherever possible.
    - Every instruction carries a short `description`.
    - Answer with JSON only: {"instructions": [...]}
    """

    generator_prompt = """
    ## Page
    URL: {url}

    ## Page snapshot
    {snapshot}

    ## Test case
    {test_case}
    """

    healer_system_prompt = """
    ## Role
    You are an expert in end-to-end test automation. Analyse a failed test and decide whether the
    application or the test script is at fault.

    ## Common failure patterns
    1. UI interference ("intercepts pointer events", "not clickable"): close the overlay first.
    2. Timing ("timeout", "detached", "not visible"): insert a wait.
    3. Selectors ("not found", "multiple elements"): take the right ref from the snapshot.
    4. Viewport ("not in viewport"): scroll first.
    5. State ("disabled", "readonly"): perform the missing precondition.

    ## Output
    Answer with JSON only:
    {
      "is_bug": false,
      "root_cause": "one sentence",
      "fixed_instructions": [ ...the full corrected instruction list, or null when is_bug is true... ]
    }
    """

    healer_prompt = """
    ## Test case
    {test_case_id}

    ## Executed instructions
    {instructions}

    ## Error
    {error}

    ## Page snapshot at failure
    {snapshot}
    """
