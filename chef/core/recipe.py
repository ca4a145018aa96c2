import json
from pathlib import Path

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Ingredient(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    original: str = ""  # Full ingredient line as written, e.g. "2 cups flour"


class InstructionStep(BaseModel):
    number: int = 0
    step: str = ""


class Recipe(BaseModel):
    """A recipe as the cook-along session needs it.

    Accepts both snake_case and the camelCase keys produced by recipe APIs
    (readyInMinutes, glutenFree, ...).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: int = 0
    title: str
    ready_in_minutes: int = Field(0, validation_alias=AliasChoices("ready_in_minutes", "readyInMinutes"))
    servings: int = 1
    summary: str = ""
    ingredients: list[Ingredient] = Field(default_factory=list)
    instructions: list[InstructionStep] = Field(default_factory=list)
    vegetarian: bool = False
    vegan: bool = False
    gluten_free: bool = Field(False, validation_alias=AliasChoices("gluten_free", "glutenFree"))
    dairy_free: bool = Field(False, validation_alias=AliasChoices("dairy_free", "dairyFree"))

    @classmethod
    def from_dict(cls, data: dict) -> "Recipe":
        data = dict(data)
        steps = data.get("instructions") or []
        # Plain strings are numbered in order
        data["instructions"] = [
            {"number": i + 1, "step": s} if isinstance(s, str) else s
            for i, s in enumerate(steps)
        ]
        ingredients = data.get("ingredients") or []
        data["ingredients"] = [
            {"name": i, "original": i} if isinstance(i, str) else i
            for i in ingredients
        ]
        return cls.model_validate(data)

    @classmethod
    def from_file(cls, path: Path) -> "Recipe":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    @property
    def dietary_labels(self) -> list[str]:
        labels = []
        if self.vegetarian:
            labels.append("Vegetarian")
        if self.vegan:
            labels.append("Vegan")
        if self.gluten_free:
            labels.append("Gluten-Free")
        if self.dairy_free:
            labels.append("Dairy-Free")
        return labels
