"""
Built-in formula templates for common calculated measures.
Each template names the measures it expects; hosts rename them to match
their own catalog before creating the measure.
"""

from typing import Any, Dict, List, Optional

FORMULA_TEMPLATES: List[Dict[str, Any]] = [
    {
        "id": "bmi",
        "name": "BMI (Body Mass Index)",
        "category": "health",
        "formula": "{weight} / ({height} * {height})",
        "decimal_places": 2,
        "unit": "kg/m²",
        "help_text": "Requires weight in kilograms and height in meters",
    },
    {
        "id": "bmi_cm",
        "name": "BMI (with height in cm)",
        "category": "health",
        "formula": "{weight} / (({height_cm} / 100) * ({height_cm} / 100))",
        "decimal_places": 2,
        "unit": "kg/m²",
        "help_text": "Requires weight in kilograms and height in centimeters",
    },
    {
        "id": "weight_change",
        "name": "Weight Change",
        "category": "progress",
        "formula": "{delta:weight}",
        "decimal_places": 1,
        "unit": "kg",
        "help_text": "Difference between the latest and the previous weight",
    },
    {
        "id": "weight_change_percent",
        "name": "Weight Change Percentage",
        "category": "progress",
        "formula": "({delta:weight} / {previous:weight}) * 100",
        "decimal_places": 1,
        "unit": "%",
        "help_text": "Change relative to the previous weight",
    },
    {
        "id": "weight_avg30",
        "name": "30-day Average Weight",
        "category": "progress",
        "formula": "{avg30:weight}",
        "decimal_places": 1,
        "unit": "kg",
        "help_text": "Mean of all weights recorded in the last 30 days",
    },
    {
        "id": "age_years",
        "name": "Age in Years",
        "category": "demographics",
        "formula": "age_years({birth_date_days})",
        "decimal_places": 0,
        "unit": "years",
        "help_text": "Requires birth date as days since 1970-01-01",
    },
]


def get_templates(category: Optional[str] = None) -> List[Dict[str, Any]]:
    if category is None:
        return [dict(t) for t in FORMULA_TEMPLATES]
    return [dict(t) for t in FORMULA_TEMPLATES if t["category"] == category]


def get_template(template_id: str) -> Optional[Dict[str, Any]]:
    for template in FORMULA_TEMPLATES:
        if template["id"] == template_id:
            return dict(template)
    return None
