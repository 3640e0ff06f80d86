"""
Data model: activity classes, detection sources, fusion weights and the
immutable Detection record, plus the helpers that turn a model output vector
into a PredictionSet and combine two PredictionSets.

A PredictionSet is a plain dict[str, float] (activity name -> confidence).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Mapping

import numpy as np


class ActivityClass(Enum):
    """26 activities plus UNKNOWN. Declaration order is the model output order."""

    CLEANING = (1, "Nettoyer", "Activités de nettoyage, ménage")
    CONVERSING = (2, "Converser, parler", "Communication verbale entre personnes")
    COOKING = (3, "Préparer à manger", "Préparation de repas, cuisine")
    DANCING = (4, "Danser", "Mouvements rythmiques, danse")
    EATING = (5, "Manger", "Prise de repas, consommation de nourriture")
    FEEDING = (6, "Nourrir", "Nourrir des animaux (chien/chat/oiseaux/poissons)")
    GOING_TO_SLEEP = (7, "Se coucher", "Préparation au coucher")
    IRONING = (8, "Repasser", "Repassage de vêtements")
    KNITTING = (9, "Tricoter/coudre", "Activités de tricot, couture")
    LISTENING_MUSIC = (10, "Ecouter de la musique/radio", "Écoute attentive de musique ou radio")
    MOVING = (11, "Se déplacer", "Déplacement dans l'espace")
    NEEDING_HELP = (12, "Avoir besoin d'assistance", "Situation nécessitant de l'aide")
    PHONING = (13, "Téléphoner", "Communication téléphonique")
    PLAYING = (14, "Jouer", "Jeux, divertissement")
    PLAYING_MUSIC = (15, "Jouer de la musique", "Performance musicale avec instrument")
    PUTTING_AWAY = (16, "Ranger", "Activités de rangement")
    READING = (17, "Lire", "Lecture de livres, journaux, etc.")
    RECEIVING = (18, "Recevoir quelqu'un", "Accueil de visiteurs")
    SINGING = (19, "Chanter", "Performance vocale")
    SLEEPING = (20, "Dormir", "État de sommeil")
    USING_SCREEN = (21, "Utiliser un écran", "Utilisation d'appareils électroniques (PC, laptop, tablet, smartphone)")
    WAITING = (22, "Ne rien faire, s'ennuyer", "Attente, inactivité")
    WAKING_UP = (23, "Se lever", "Sortie du sommeil, réveil")
    WASHING = (24, "Se laver, passer aux toilettes", "Hygiène personnelle")
    WATCHING_TV = (25, "Regarder la télévision", "Visionnage de programmes TV")
    WRITING = (26, "Ecrire", "Écriture manuelle ou sur clavier")
    UNKNOWN = (0, "Inconnu", "Activité non reconnue")

    def __init__(self, class_id: int, french_name: str, description: str) -> None:
        self.class_id = class_id
        self.french_name = french_name
        self.description = description

    @property
    def english_name(self) -> str:
        return self.name

    @classmethod
    def from_english_name(cls, name: str | None) -> "ActivityClass":
        if name:
            key = name.strip().upper()
            if key in cls.__members__:
                return cls[key]
        return cls.UNKNOWN

    @classmethod
    def from_id(cls, class_id: int) -> "ActivityClass":
        for activity in cls:
            if activity.class_id == class_id:
                return activity
        return cls.UNKNOWN

    def __str__(self) -> str:
        return f"{self.french_name} ({self.name})"


AUDIO_EXCLUDED = frozenset({
    ActivityClass.FEEDING,
    ActivityClass.IRONING,
    ActivityClass.PLAYING,
    ActivityClass.SINGING,
    ActivityClass.UNKNOWN,
})


def image_supported_classes() -> list[ActivityClass]:
    """All classes, in model output order."""
    return list(ActivityClass)


def audio_supported_classes() -> list[ActivityClass]:
    return [a for a in ActivityClass if a not in AUDIO_EXCLUDED]


class DetectionSource(str, Enum):
    CAMERA = "CAMERA"
    MICROPHONE = "MICROPHONE"
    FUSION = "FUSION"

    @property
    def display_name(self) -> str:
        return {"CAMERA": "Caméra", "MICROPHONE": "Microphone", "FUSION": "Fusion Image/Audio"}[self.value]


@dataclass(frozen=True)
class FusionWeights:
    """Blend ratios; not normalized, the configured ratio is kept as is."""
    image_weight: float
    sound_weight: float

    def __post_init__(self) -> None:
        if self.image_weight < 0 or self.sound_weight < 0:
            raise ValueError(f"Fusion weights must be non-negative: {self.image_weight}, {self.sound_weight}")

    def to_dict(self) -> dict[str, float]:
        return {"image_weight": self.image_weight, "sound_weight": self.sound_weight}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FusionWeights":
        return cls(float(data.get("image_weight", 0.0)), float(data.get("sound_weight", 0.0)))


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass(frozen=True)
class Detection:
    """One accepted activity detection. Never mutated after creation."""
    timestamp: datetime
    predicted_activity: str
    confidence: float
    source: DetectionSource
    person_detected: bool = True
    person_confidence: float = 0.0
    predictions: dict[str, float] = field(default_factory=dict)
    fusion_weights: FusionWeights | None = None

    def __post_init__(self) -> None:
        # private copy so callers cannot mutate the record through their dict
        object.__setattr__(self, "predictions", dict(self.predictions))

    @classmethod
    def from_predictions(
        cls,
        predictions: Mapping[str, float],
        source: DetectionSource,
        person_confidence: float,
        fusion_weights: FusionWeights | None = None,
        timestamp: datetime | None = None,
    ) -> "Detection":
        """Build a detection whose confidence is the max of the PredictionSet."""
        activity, confidence = best_prediction(predictions)
        return cls(
            timestamp=timestamp or datetime.now(),
            predicted_activity=activity,
            confidence=confidence,
            source=source,
            person_detected=True,
            person_confidence=person_confidence,
            predictions=dict(predictions),
            fusion_weights=fusion_weights,
        )

    @property
    def date_key(self) -> str:
        return self.timestamp.strftime("%Y-%m-%d")

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(sep=" "),
            "predicted_activity": self.predicted_activity,
            "confidence": self.confidence,
            "source": self.source.value,
            "person_detected": self.person_detected,
            "person_confidence": self.person_confidence,
            "predictions": dict(self.predictions),
            "fusion_weights": self.fusion_weights.to_dict() if self.fusion_weights else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Detection":
        """Inverse of to_dict. Accepts 'YYYY-MM-DD HH:MM:SS' with or without microseconds."""
        weights = data.get("fusion_weights")
        return cls(
            timestamp=datetime.fromisoformat(str(data["timestamp"])),
            predicted_activity=str(data["predicted_activity"]),
            confidence=float(data["confidence"]),
            source=DetectionSource(str(data["source"]).upper()),
            person_detected=bool(data.get("person_detected", True)),
            person_confidence=float(data.get("person_confidence") or 0.0),
            predictions={str(k): float(v) for k, v in (data.get("predictions") or {}).items()},
            fusion_weights=FusionWeights.from_dict(weights) if weights else None,
        )

    def __str__(self) -> str:
        return (
            f"Detection(timestamp={self.timestamp.strftime(TIMESTAMP_FORMAT)}, "
            f"activity={self.predicted_activity!r}, confidence={self.confidence:.2f}, "
            f"source={self.source.value}, person_detected={self.person_detected})"
        )


def parse_predictions(output: Iterable[float] | np.ndarray,
                      classes: list[ActivityClass] | None = None) -> dict[str, float]:
    """Map the i-th output value to the i-th class; extra values on either side are ignored."""
    classes = classes or image_supported_classes()
    values = np.asarray(output, dtype=np.float64).ravel()
    n = min(len(values), len(classes))
    return {classes[i].english_name: float(values[i]) for i in range(n)}


def best_prediction(predictions: Mapping[str, float]) -> tuple[str, float]:
    """(activity, confidence) with the highest confidence. Empty sets are not usable."""
    if not predictions:
        raise ValueError("PredictionSet is empty")
    activity = max(predictions, key=lambda k: predictions[k])
    return activity, float(predictions[activity])


def fuse_predictions(
    image: Mapping[str, float],
    audio: Mapping[str, float],
    weights: FusionWeights,
) -> dict[str, float]:
    """Per-class weighted sum; a class missing on one side counts as 0 there."""
    fused: dict[str, float] = {}
    for activity in set(image) | set(audio):
        fused[activity] = (
            image.get(activity, 0.0) * weights.image_weight
            + audio.get(activity, 0.0) * weights.sound_weight
        )
    return fused
