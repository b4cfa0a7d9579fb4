"""Clinical vocabularies and Aho-Corasick multi-term matching.

The vocabularies map every surface term to a canonical name and a
category. ``VocabularyMatcher`` compiles one vocabulary into an
Aho-Corasick automaton so a note is scanned once regardless of how many
terms are listed; matches are checked for word boundaries and overlapping
matches resolve to the longest span.

Tables are read-only after import and safe to share between sessions.
"""

import logging
import threading
from dataclasses import dataclass

import ahocorasick

logger = logging.getLogger(__name__)


# ============================================================================
# Vocabularies: surface term -> (canonical name, category)
# ============================================================================


COMPLICATION_TERMS: dict[str, tuple[str, str]] = {
    # Vascular
    "vasospasm": ("vasospasm", "vascular"),
    "cerebral vasospasm": ("vasospasm", "vascular"),
    "angiographic vasospasm": ("vasospasm", "vascular"),
    "delayed cerebral ischemia": ("delayed cerebral ischemia", "vascular"),
    "dci": ("delayed cerebral ischemia", "vascular"),
    "rebleed": ("rebleeding", "vascular"),
    "rebleeding": ("rebleeding", "vascular"),
    "re-rupture": ("rebleeding", "vascular"),
    "rerupture": ("rebleeding", "vascular"),
    "stroke": ("stroke", "vascular"),
    "infarct": ("infarction", "vascular"),
    "infarction": ("infarction", "vascular"),
    "postoperative hematoma": ("postoperative hematoma", "vascular"),
    "recurrent hematoma": ("recurrent hematoma", "vascular"),
    "hematoma expansion": ("hematoma expansion", "vascular"),
    # Neurologic
    "seizure": ("seizure", "neurologic"),
    "seizures": ("seizure", "neurologic"),
    "status epilepticus": ("status epilepticus", "neurologic"),
    "hydrocephalus": ("hydrocephalus", "neurologic"),
    "cerebral edema": ("cerebral edema", "neurologic"),
    "herniation": ("herniation", "neurologic"),
    "new deficit": ("new neurologic deficit", "neurologic"),
    "new weakness": ("new neurologic deficit", "neurologic"),
    "aphasia": ("aphasia", "neurologic"),
    "hemiparesis": ("hemiparesis", "neurologic"),
    "delirium": ("delirium", "neurologic"),
    "elevated icp": ("elevated intracranial pressure", "neurologic"),
    "intracranial hypertension": ("elevated intracranial pressure", "neurologic"),
    # Infectious
    "ventriculitis": ("ventriculitis", "infectious"),
    "meningitis": ("meningitis", "infectious"),
    "wound infection": ("wound infection", "infectious"),
    "surgical site infection": ("wound infection", "infectious"),
    "pneumonia": ("pneumonia", "infectious"),
    "urinary tract infection": ("urinary tract infection", "infectious"),
    "uti": ("urinary tract infection", "infectious"),
    "sepsis": ("sepsis", "infectious"),
    "bacteremia": ("bacteremia", "infectious"),
    "shunt infection": ("shunt infection", "infectious"),
    # Metabolic
    "hyponatremia": ("hyponatremia", "metabolic"),
    "hypernatremia": ("hypernatremia", "metabolic"),
    "siadh": ("SIADH", "metabolic"),
    "cerebral salt wasting": ("cerebral salt wasting", "metabolic"),
    "diabetes insipidus": ("diabetes insipidus", "metabolic"),
    "hyperglycemia": ("hyperglycemia", "metabolic"),
    "hypokalemia": ("hypokalemia", "metabolic"),
    "acute kidney injury": ("acute kidney injury", "metabolic"),
    "aki": ("acute kidney injury", "metabolic"),
    # Surgical
    "csf leak": ("CSF leak", "surgical"),
    "cerebrospinal fluid leak": ("CSF leak", "surgical"),
    "pseudomeningocele": ("pseudomeningocele", "surgical"),
    "wound dehiscence": ("wound dehiscence", "surgical"),
    "shunt malfunction": ("shunt malfunction", "surgical"),
    "shunt failure": ("shunt malfunction", "surgical"),
    "hardware failure": ("hardware failure", "surgical"),
    "durotomy": ("durotomy", "surgical"),
    "pneumocephalus": ("pneumocephalus", "surgical"),
    # Respiratory
    "respiratory failure": ("respiratory failure", "respiratory"),
    "aspiration": ("aspiration", "respiratory"),
    "atelectasis": ("atelectasis", "respiratory"),
    "ards": ("ARDS", "respiratory"),
    # Cardiac
    "atrial fibrillation": ("atrial fibrillation", "cardiac"),
    "afib": ("atrial fibrillation", "cardiac"),
    "takotsubo": ("takotsubo cardiomyopathy", "cardiac"),
    "neurogenic stunned myocardium": ("neurogenic stunned myocardium", "cardiac"),
    "hypotension": ("hypotension", "cardiac"),
    # Thromboembolic
    "deep vein thrombosis": ("deep vein thrombosis", "thromboembolic"),
    "dvt": ("deep vein thrombosis", "thromboembolic"),
    "pulmonary embolism": ("pulmonary embolism", "thromboembolic"),
}


MEDICATION_TERMS: dict[str, tuple[str, str]] = {
    # Vasospasm prophylaxis / calcium channel blockers
    "nimodipine": ("nimodipine", "vasospasm_prophylaxis"),
    "nimotop": ("nimodipine", "vasospasm_prophylaxis"),
    "nicardipine": ("nicardipine", "antihypertensive"),
    "clevidipine": ("clevidipine", "antihypertensive"),
    "labetalol": ("labetalol", "antihypertensive"),
    "hydralazine": ("hydralazine", "antihypertensive"),
    # Antiepileptics
    "levetiracetam": ("levetiracetam", "antiepileptic"),
    "keppra": ("levetiracetam", "antiepileptic"),
    "phenytoin": ("phenytoin", "antiepileptic"),
    "dilantin": ("phenytoin", "antiepileptic"),
    "fosphenytoin": ("fosphenytoin", "antiepileptic"),
    "lacosamide": ("lacosamide", "antiepileptic"),
    "vimpat": ("lacosamide", "antiepileptic"),
    "valproate": ("valproate", "antiepileptic"),
    "lorazepam": ("lorazepam", "antiepileptic"),
    # Anticoagulants / antiplatelets / reversal
    "heparin": ("heparin", "anticoagulant"),
    "enoxaparin": ("enoxaparin", "anticoagulant"),
    "lovenox": ("enoxaparin", "anticoagulant"),
    "warfarin": ("warfarin", "anticoagulant"),
    "coumadin": ("warfarin", "anticoagulant"),
    "apixaban": ("apixaban", "anticoagulant"),
    "eliquis": ("apixaban", "anticoagulant"),
    "rivaroxaban": ("rivaroxaban", "anticoagulant"),
    "xarelto": ("rivaroxaban", "anticoagulant"),
    "aspirin": ("aspirin", "antiplatelet"),
    "clopidogrel": ("clopidogrel", "antiplatelet"),
    "plavix": ("clopidogrel", "antiplatelet"),
    "ticagrelor": ("ticagrelor", "antiplatelet"),
    "kcentra": ("prothrombin complex concentrate", "reversal"),
    "andexanet": ("andexanet alfa", "reversal"),
    "vitamin k": ("vitamin K", "reversal"),
    "protamine": ("protamine", "reversal"),
    "tranexamic acid": ("tranexamic acid", "reversal"),
    "txa": ("tranexamic acid", "reversal"),
    # Steroids / osmotic therapy
    "dexamethasone": ("dexamethasone", "steroid"),
    "decadron": ("dexamethasone", "steroid"),
    "methylprednisolone": ("methylprednisolone", "steroid"),
    "mannitol": ("mannitol", "osmotic"),
    "hypertonic saline": ("hypertonic saline", "osmotic"),
    "3% saline": ("hypertonic saline", "osmotic"),
    "23.4% saline": ("hypertonic saline", "osmotic"),
    # Vasopressors
    "norepinephrine": ("norepinephrine", "vasopressor"),
    "levophed": ("norepinephrine", "vasopressor"),
    "phenylephrine": ("phenylephrine", "vasopressor"),
    "neosynephrine": ("phenylephrine", "vasopressor"),
    "vasopressin": ("vasopressin", "vasopressor"),
    "milrinone": ("milrinone", "inotrope"),
    # Antibiotics
    "cefazolin": ("cefazolin", "antibiotic"),
    "ancef": ("cefazolin", "antibiotic"),
    "vancomycin": ("vancomycin", "antibiotic"),
    "cefepime": ("cefepime", "antibiotic"),
    "ceftriaxone": ("ceftriaxone", "antibiotic"),
    "meropenem": ("meropenem", "antibiotic"),
    "piperacillin-tazobactam": ("piperacillin-tazobactam", "antibiotic"),
    "zosyn": ("piperacillin-tazobactam", "antibiotic"),
    # Analgesia / sedation
    "acetaminophen": ("acetaminophen", "analgesic"),
    "tylenol": ("acetaminophen", "analgesic"),
    "oxycodone": ("oxycodone", "analgesic"),
    "morphine": ("morphine", "analgesic"),
    "hydromorphone": ("hydromorphone", "analgesic"),
    "fentanyl": ("fentanyl", "analgesic"),
    "propofol": ("propofol", "sedative"),
    "dexmedetomidine": ("dexmedetomidine", "sedative"),
    "precedex": ("dexmedetomidine", "sedative"),
    # Sodium management
    "fludrocortisone": ("fludrocortisone", "sodium_management"),
    "salt tabs": ("sodium chloride tablets", "sodium_management"),
    "sodium chloride tablets": ("sodium chloride tablets", "sodium_management"),
    # Oncology
    "temozolomide": ("temozolomide", "chemotherapy"),
    "bevacizumab": ("bevacizumab", "chemotherapy"),
}


PROCEDURE_TERMS: dict[str, tuple[str, str]] = {
    # Cranial
    "craniotomy": ("craniotomy", "cranial"),
    "craniectomy": ("craniectomy", "cranial"),
    "decompressive craniectomy": ("decompressive craniectomy", "cranial"),
    "hemicraniectomy": ("decompressive craniectomy", "cranial"),
    "cranioplasty": ("cranioplasty", "cranial"),
    "burr hole": ("burr hole evacuation", "cranial"),
    "burr holes": ("burr hole evacuation", "cranial"),
    "twist drill": ("twist drill craniostomy", "cranial"),
    "aneurysm clipping": ("aneurysm clipping", "cranial"),
    "clipping": ("aneurysm clipping", "cranial"),
    "clip ligation": ("aneurysm clipping", "cranial"),
    "resection": ("tumor resection", "cranial"),
    "gross total resection": ("tumor resection", "cranial"),
    "subtotal resection": ("tumor resection", "cranial"),
    "stereotactic biopsy": ("stereotactic biopsy", "cranial"),
    "biopsy": ("biopsy", "cranial"),
    "hematoma evacuation": ("hematoma evacuation", "cranial"),
    "evacuation": ("hematoma evacuation", "cranial"),
    "avm resection": ("AVM resection", "cranial"),
    "microvascular decompression": ("microvascular decompression", "cranial"),
    # Endovascular
    "coiling": ("endovascular coiling", "endovascular"),
    "coil embolization": ("endovascular coiling", "endovascular"),
    "endovascular coiling": ("endovascular coiling", "endovascular"),
    "flow diverter": ("flow diverter placement", "endovascular"),
    "pipeline embolization": ("flow diverter placement", "endovascular"),
    "embolization": ("embolization", "endovascular"),
    "mma embolization": ("middle meningeal artery embolization", "endovascular"),
    "middle meningeal artery embolization": ("middle meningeal artery embolization", "endovascular"),
    "angioplasty": ("angioplasty", "endovascular"),
    "intra-arterial verapamil": ("intra-arterial vasodilator therapy", "endovascular"),
    "intra-arterial nicardipine": ("intra-arterial vasodilator therapy", "endovascular"),
    "thrombectomy": ("thrombectomy", "endovascular"),
    # CSF diversion
    "external ventricular drain": ("external ventricular drain placement", "csf_diversion"),
    "evd": ("external ventricular drain placement", "csf_diversion"),
    "ventriculostomy": ("external ventricular drain placement", "csf_diversion"),
    "lumbar drain": ("lumbar drain placement", "csf_diversion"),
    "ventriculoperitoneal shunt": ("ventriculoperitoneal shunt placement", "csf_diversion"),
    "vp shunt": ("ventriculoperitoneal shunt placement", "csf_diversion"),
    "vps": ("ventriculoperitoneal shunt placement", "csf_diversion"),
    "lumboperitoneal shunt": ("lumboperitoneal shunt placement", "csf_diversion"),
    "shunt revision": ("shunt revision", "csf_diversion"),
    "endoscopic third ventriculostomy": ("endoscopic third ventriculostomy", "csf_diversion"),
    "etv": ("endoscopic third ventriculostomy", "csf_diversion"),
    "lumbar puncture": ("lumbar puncture", "csf_diversion"),
    # Spine
    "laminectomy": ("laminectomy", "spinal"),
    "laminotomy": ("laminotomy", "spinal"),
    "discectomy": ("discectomy", "spinal"),
    "microdiscectomy": ("microdiscectomy", "spinal"),
    "foraminotomy": ("foraminotomy", "spinal"),
    "spinal fusion": ("spinal fusion", "spinal"),
    "fusion": ("spinal fusion", "spinal"),
    "acdf": ("anterior cervical discectomy and fusion", "spinal"),
    "anterior cervical discectomy and fusion": ("anterior cervical discectomy and fusion", "spinal"),
    "tlif": ("transforaminal lumbar interbody fusion", "spinal"),
    "kyphoplasty": ("kyphoplasty", "spinal"),
    # Bedside / airway
    "intubation": ("intubation", "bedside"),
    "intubated": ("intubation", "bedside"),
    "tracheostomy": ("tracheostomy", "bedside"),
    "peg": ("PEG tube placement", "bedside"),
    # Radiation
    "stereotactic radiosurgery": ("stereotactic radiosurgery", "radiation"),
    "srs": ("stereotactic radiosurgery", "radiation"),
    "gamma knife": ("stereotactic radiosurgery", "radiation"),
    "radiation therapy": ("radiation therapy", "radiation"),
}


CONSULT_TERMS: dict[str, tuple[str, str]] = {
    "neurology": ("neurology", "medical"),
    "neurocritical care": ("neurocritical care", "medical"),
    "cardiology": ("cardiology", "medical"),
    "infectious disease": ("infectious disease", "medical"),
    "endocrinology": ("endocrinology", "medical"),
    "nephrology": ("nephrology", "medical"),
    "hematology": ("hematology", "medical"),
    "oncology": ("oncology", "medical"),
    "radiation oncology": ("radiation oncology", "medical"),
    "palliative care": ("palliative care", "medical"),
    "psychiatry": ("psychiatry", "medical"),
    "physical therapy": ("physical therapy", "rehabilitation"),
    "pt/ot": ("physical and occupational therapy", "rehabilitation"),
    "occupational therapy": ("occupational therapy", "rehabilitation"),
    "speech therapy": ("speech therapy", "rehabilitation"),
    "pm&r": ("physical medicine and rehabilitation", "rehabilitation"),
    "social work": ("social work", "support"),
    "case management": ("case management", "support"),
    "interventional radiology": ("interventional radiology", "procedural"),
    "general surgery": ("general surgery", "procedural"),
    "ent": ("otolaryngology", "procedural"),
}


# Findings where a decrease is good news ("decreased edema", "ICP reduced").
# A bare "decreased" is not improvement language: "GCS decreased" is a decline.
ADVERSE_QUANTITIES = (
    r"(?:(?:cerebral|vasogenic|perilesional)\s+)?(?:edema|swelling)|icp|intracranial\s+pressure"
    r"|midline\s+shift|mass\s+effect|drain(?:age)?\s+output|headaches?|pain"
)
IMPROVING_DECREASE = (
    rf"(?:decreas(?:ed|ing)|reduced|less)\s+(?:{ADVERSE_QUANTITIES})"
    rf"|(?:{ADVERSE_QUANTITIES})\s+(?:(?:has|have|is|was)\s+)?(?:decreased|decreasing|reduced)"
)


@dataclass
class VocabularyMatch:
    """One vocabulary hit in a text."""

    term: str
    canonical: str
    category: str
    start: int
    end: int


class VocabularyMatcher:
    """Aho-Corasick matcher over one vocabulary table.

    Usage:
        matcher = VocabularyMatcher(COMPLICATION_TERMS)
        for match in matcher.find(text):
            print(match.canonical, match.start, match.end)
    """

    def __init__(self, terms: dict[str, tuple[str, str]], name: str = "vocabulary"):
        self.name = name
        self._automaton = ahocorasick.Automaton()
        for term, (canonical, category) in terms.items():
            key = term.lower()
            self._automaton.add_word(key, (key, canonical, category))
        self._automaton.make_automaton()
        logger.debug(f"Built {name} automaton with {len(terms)} terms")

    def find(self, text: str) -> list[VocabularyMatch]:
        """Find non-overlapping whole-word matches, longest span first.

        Args:
            text: Text to scan

        Returns:
            Matches in document order
        """
        text_lower = text.lower()
        candidates: list[VocabularyMatch] = []

        for end_idx, (term, canonical, category) in self._automaton.iter(text_lower):
            start = end_idx - len(term) + 1
            end = end_idx + 1
            if not self._is_word_boundary(text_lower, start, end):
                continue
            candidates.append(VocabularyMatch(
                term=text[start:end],
                canonical=canonical,
                category=category,
                start=start,
                end=end,
            ))

        candidates.sort(key=lambda m: (m.start, -(m.end - m.start)))
        result: list[VocabularyMatch] = []
        last_end = -1
        for match in candidates:
            if match.start >= last_end:
                result.append(match)
                last_end = match.end
        return result

    def contains(self, text: str) -> bool:
        """Whether any vocabulary term occurs in the text."""
        return bool(self.find(text))

    @staticmethod
    def _is_word_boundary(text: str, start: int, end: int) -> bool:
        """Check the match is not part of a longer word.

        The automaton matches substrings, so boundaries are verified
        here the way ``\\b`` would in a regex.
        """
        if start > 0 and (text[start - 1].isalnum() or text[start - 1] == "_"):
            return False
        if end < len(text) and (text[end].isalnum() or text[end] == "_"):
            return False
        return True


# ============================================================================
# Shared matchers
# ============================================================================


_matchers: dict[str, VocabularyMatcher] = {}
_matchers_lock = threading.Lock()

_VOCABULARIES: dict[str, dict[str, tuple[str, str]]] = {
    "complications": COMPLICATION_TERMS,
    "medications": MEDICATION_TERMS,
    "procedures": PROCEDURE_TERMS,
    "consults": CONSULT_TERMS,
}


def get_matcher(name: str) -> VocabularyMatcher:
    """Get or build the shared matcher for a named vocabulary."""
    if name not in _VOCABULARIES:
        raise KeyError(f"Unknown vocabulary: {name}")

    if name not in _matchers:
        with _matchers_lock:
            if name not in _matchers:
                _matchers[name] = VocabularyMatcher(_VOCABULARIES[name], name=name)

    return _matchers[name]


def reset_matchers() -> None:
    """Drop all built matchers."""
    with _matchers_lock:
        _matchers.clear()
