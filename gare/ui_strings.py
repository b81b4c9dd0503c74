from __future__ import annotations

from typing import Dict, List


FRIENDLY_TERMS: Dict[str, str] = {
    "app_name": "Gare e Lotti",
    "tender": "Gara",
    "lot": "Lotto",
    "quote": "Preventivo",
    "participant": "Partecipante",
    "clarification_request": "Richiesta di integrazione",
}


STATUS_GROUPS: Dict[str, List[Dict[str, str]]] = {
    "lotto": [
        {"key": "created", "label": "Bozza", "description": "Lotto creato, valutazione non ancora avviata."},
        {
            "key": "technical_evaluation",
            "label": "In valutazione tecnica",
            "description": "Il lotto attende l'approvazione tecnica.",
        },
        {
            "key": "economic_evaluation",
            "label": "In valutazione economica",
            "description": "Approvazione tecnica ottenuta, in corso la valutazione economica.",
        },
        {
            "key": "price_elaboration",
            "label": "In elaborazione",
            "description": "Definizione del prezzo di uscita del lotto.",
        },
        {"key": "submitted", "label": "Presentato", "description": "Offerta presentata alla stazione appaltante."},
        {"key": "under_examination", "label": "In esame", "description": "Offerta in esame presso l'ente."},
        {
            "key": "clarification_pending",
            "label": "Richiesta integrazione",
            "description": "L'ente ha richiesto chiarimenti o integrazioni.",
        },
        {"key": "awarded", "label": "Vinto", "description": "Lotto aggiudicato."},
        {"key": "lost", "label": "Perso", "description": "Lotto aggiudicato ad altro concorrente."},
        {"key": "rejected", "label": "Rifiutato", "description": "Lotto rifiutato internamente."},
        {
            "key": "discarded_by_authority",
            "label": "Scartato",
            "description": "Offerta scartata dalla stazione appaltante.",
        },
    ],
    "gara": [
        {"key": "open", "label": "In lavorazione", "description": "Gara con lotti ancora in corso."},
        {"key": "closed", "label": "Conclusa", "description": "Gara chiusa manualmente o con tutti i lotti conclusi."},
    ],
    "preventivo": [
        {"key": "pending", "label": "In attesa", "description": "Preventivo richiesto al fornitore."},
        {"key": "received", "label": "Ricevuto", "description": "Preventivo ricevuto, da validare."},
        {"key": "valid", "label": "Valido", "description": "Preventivo validato e utilizzabile."},
        {"key": "selected", "label": "Selezionato", "description": "Preventivo scelto per il lotto."},
        {"key": "expired", "label": "Scaduto", "description": "Preventivo oltre la data di scadenza."},
    ],
}


MESSAGES: Dict[str, Dict[str, str]] = {
    "success": {
        "state_changed": "Stato del lotto aggiornato.",
        "lot_rejected": "Lotto rifiutato.",
        "evaluation_saved": "Valutazione registrata.",
        "price_elaboration_saved": "Elaborazione prezzi registrata.",
        "awardee_set": "Aggiudicatario impostato.",
        "clarification_closed": "Richiesta di integrazione chiusa.",
        "quote_selected": "Preventivo selezionato.",
        "tender_closed": "Gara chiusa.",
    },
    "error": {
        "not_found": "Elemento non trovato.",
        "tender_not_found": "Gara non trovata.",
        "lot_not_found": "Lotto non trovato.",
        "quote_not_found": "Preventivo non trovato.",
        "participant_not_found": "Partecipante non trovato.",
        "clarification_not_found": "Richiesta di integrazione non trovata.",
        "invalid_transition": "Passaggio di stato non consentito per lo stato attuale del lotto.",
        "quote_invalid_transition": "Operazione non consentita per lo stato attuale del preventivo.",
        "tender_invalid_transition": "Operazione non consentita per lo stato attuale della gara.",
        "price_elaboration_missing": "Registrare l'elaborazione prezzi prima di presentare il lotto.",
        "clarification_request_required": "Serve almeno una richiesta di integrazione aperta.",
        "clarification_requests_open": "Ci sono ancora richieste di integrazione aperte.",
        "examination_start_requires_submitted": "La data di inizio esame si imposta solo su lotti presentati.",
        "clarification_requires_examination": "Le richieste di integrazione si aprono solo su lotti in esame.",
        "evaluation_not_ready": "La valutazione tecnica non risulta approvata.",
        "technical_evaluation_not_approved": "La valutazione tecnica non risulta approvata.",
        "economic_evaluation_not_approved": "La valutazione economica non risulta approvata.",
        "rationale_required": "Motivazione obbligatoria quando il prezzo desiderato differisce da quello di uscita.",
        "adaptation_rationale_required": "Motivazione obbligatoria quando il prezzo desiderato differisce da quello di uscita.",
        "empty_reason": "Indicare una motivazione.",
        "rejection_reason_required": "Indicare il motivo del rifiuto.",
        "evaluation_rejection_reason_required": "Indicare il motivo della valutazione negativa.",
        "closure_reason_required": "Indicare il motivo della chiusura della gara.",
        "already_closed": "La richiesta di integrazione risulta gia chiusa.",
        "clarification_already_closed": "La richiesta di integrazione risulta gia chiusa.",
        "response_required": "Registrare una risposta prima di chiudere la richiesta.",
        "clarification_response_required": "Registrare una risposta prima di chiudere la richiesta.",
        "clarification_already_answered": "La richiesta di integrazione ha gia una risposta.",
        "invalid_participant_state": "Stato del partecipante non valido per questa operazione.",
        "participant_rejected_by_authority": "Il partecipante e stato escluso dall'ente e non puo essere aggiudicatario.",
        "participant_is_awardee": "Il partecipante aggiudicatario non puo essere escluso.",
        "participant_flags_exclusive": "Un partecipante non puo essere aggiudicatario ed escluso insieme.",
        "awardee_already_set": "Esiste gia un aggiudicatario per questo lotto.",
        "awardee_required": "Serve esattamente un aggiudicatario per chiudere il lotto come vinto.",
        "concurrency_conflict": "Il dato e stato modificato da un altro utente. Ricaricare e riprovare.",
        "validation_failed": "Dati non validi.",
        "field_required": "Campo obbligatorio mancante.",
        "field_invalid": "Valore non valido.",
        "text_too_short": "Testo troppo breve.",
        "date_in_future": "La data non puo essere futura.",
        "response_before_request": "La risposta non puo precedere la richiesta.",
        "bidder_required": "Indicare un soggetto censito oppure la ragione sociale.",
        "bidder_ambiguous": "Indicare un soggetto censito oppure la ragione sociale, non entrambi.",
        "price_negative": "Il prezzo non puo essere negativo.",
        "quote_expiry_before_request": "La scadenza deve seguire la data di richiesta.",
        "quote_auto_renewal_invalid": "I giorni di rinnovo automatico devono essere almeno uno.",
        "quote_received_before_request": "La data di ricezione non puo precedere la richiesta.",
        "quote_amount_negative": "L'importo offerto non puo essere negativo.",
        "quote_amount_required": "Indicare l'importo offerto prima di validare il preventivo.",
        "selected_quote_not_deletable": "Un preventivo selezionato non puo essere eliminato.",
        "lot_has_dependents": "Il lotto ha preventivi, partecipanti o richieste collegate.",
        "lot_code_taken": "Codice lotto gia usato in questa gara.",
        "tender_code_taken": "Codice gara gia esistente.",
        "tender_has_lots": "La gara contiene ancora lotti.",
        "tender_closed": "La gara e chiusa.",
        "tender_not_reopenable": "La gara non puo essere riaperta.",
        "unexpected_error": "Impossibile completare l'operazione. Riprovare tra qualche istante.",
    },
}


def status_keys_for_group(group: str) -> List[str]:
    return [item["key"] for item in STATUS_GROUPS.get(group, [])]


def state_label(group: str, key: str | None, default: str | None = None) -> str:
    for item in STATUS_GROUPS.get(group, []):
        if item["key"] == key:
            return item["label"]
    if default is not None:
        return default
    return str(key or "")


def get_message(category: str, key: str, default: str | None = None) -> str:
    message = MESSAGES.get(category, {}).get(key)
    if message:
        return message
    if default is not None:
        return default
    return key


def error_message(key: str, default: str | None = None) -> str:
    return get_message("error", key, default)


def success_message(key: str, default: str | None = None) -> str:
    return get_message("success", key, default)
