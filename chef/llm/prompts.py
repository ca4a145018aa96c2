from core.recipe import Recipe

GOODBYE_MESSAGE = "Okay, I'll stop now. See you next time! Happy cooking!"
PAUSE_MESSAGE = "Session paused. Say \"resume\" when you're ready to continue."
RESUME_MESSAGE = "Resuming cooking. Let's continue!"

NATURAL_SPEECH_SYSTEM_PROMPT = (
    "You are a friendly cooking voice assistant. "
    "Convert recipe instructions into natural, conversational speech."
)


def build_cooking_system_prompt(recipe: Recipe, step_index: int) -> str:
    """System prompt for answering questions in the middle of a recipe."""
    ingredients = "\n".join(f"- {i.original or i.name}" for i in recipe.ingredients) or "- (none listed)"
    instructions = "\n".join(
        f"Step {n}: {s.step}" for n, s in enumerate(recipe.instructions, start=1)
    )
    dietary = ", ".join(recipe.dietary_labels) or "None specified"

    return f"""You are a friendly AI cooking assistant helping someone cook "{recipe.title}".

Recipe Information:
- Ready in: {recipe.ready_in_minutes} minutes
- Servings: {recipe.servings}
- Dietary: {dietary}

Ingredients:
{ingredients}

Instructions:
{instructions}

The user is currently on Step {step_index + 1}.

Your role:
- Answer questions clearly and concisely
- Provide helpful cooking tips and explanations
- Suggest substitutions when needed
- Explain techniques in simple terms
- Keep responses conversational and encouraging
- Stay focused on cooking this specific recipe

Your answer will be spoken aloud, so never use lists, markdown or emoji.
Keep your responses brief (2-3 sentences unless more detail is specifically requested)."""


def build_natural_speech_prompt(text: str) -> str:
    return f"""Convert this cooking instruction into natural, conversational speech for a voice assistant. Make it sound friendly, warm, and encouraging - like a helpful chef guiding someone through cooking.

Original: "{text}"

Rules:
- Keep it concise but natural
- Use contractions (we'll, let's, you'll)
- Add small encouraging phrases where appropriate
- Make it sound like a real person talking, not reading
- Don't add extra steps or information
- Return ONLY the converted speech text, no quotation marks or explanations

Example:
Input: "Step 1: Preheat the oven to 350 degrees Fahrenheit"
Output: Alright, let's start by preheating your oven to 350 degrees"""


def build_welcome_message(recipe: Recipe) -> str:
    steps = len(recipe.instructions)
    return (
        f"Welcome to Cook Along Mode! I'm your AI cooking assistant, and I'll help you "
        f"prepare {recipe.title}. "
        f"This recipe takes about {recipe.ready_in_minutes} minutes and makes "
        f"{recipe.servings} serving{'s' if recipe.servings != 1 else ''}. "
        f"We'll go through {steps} step{'s' if steps != 1 else ''} together. "
        "Say \"next\" to move on, \"repeat\" to hear a step again, \"back\" to go to "
        "the previous step, and \"complete\" when you're done. "
        "You can also ask me questions at any time. "
        "When you're ready to begin, say \"start\"."
    )


def build_completion_message(recipe: Recipe) -> str:
    return (
        f"Congratulations! You've completed cooking {recipe.title}! "
        "I hope it turns out delicious. Enjoy your meal!"
    )
