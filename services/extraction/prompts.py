"""Prompts and response parsing shared by the vision providers.

Both prompts ask for camelCase JSON matching InvoiceDraft / ContractDraft so
the response can be validated directly into the schema models.
"""

import json
import re
from typing import Any

from services.extraction.schema import ContractDraft, InvoiceDraft

SYSTEM_PROMPT = "You are a document extraction assistant. Return ONLY valid JSON."

INVOICE_PROMPT = """You are an expert invoice analyst for a contract reconciliation platform.

Read this invoice image and extract:

1. Invoice details: number, date, due date, subtotal, tax amount, tax rate, total amount
2. Vendor information: name and address
3. Line items: description, quantity, unit price, total price, unit of measure
4. Payment terms exactly as stated on the invoice

Report what is printed. Do not correct arithmetic and do not invent values;
use null for anything that is missing or unreadable.

For every amount you read, report how sure you are (0 to 1) in "fieldConfidence",
keyed by field path: "totalAmount", "subtotal", "taxAmount", "taxRate",
"lineItems[0].unitPrice", "lineItems[0].totalPrice", ...

Return JSON in exactly this shape:
{
  "confidence": 0.95,
  "invoiceNumber": "string",
  "date": "YYYY-MM-DD",
  "dueDate": "YYYY-MM-DD",
  "vendorName": "string",
  "vendorAddress": "string",
  "subtotal": number,
  "taxAmount": number,
  "taxRate": number,
  "totalAmount": number,
  "lineItems": [
    {"description": "string", "quantity": number, "unitPrice": number,
     "totalPrice": number, "unit": "string"}
  ],
  "paymentTerms": "string",
  "fieldConfidence": {"totalAmount": 0.95}
}"""

CONTRACT_PROMPT = """You are an expert contract analyst for a contract reconciliation platform.

Read this vendor contract image and extract the vendor and the terms needed to
reconcile future invoices against it. Use null for anything not stated.

Return JSON in exactly this shape:
{
  "confidence": 0.9,
  "vendor": {
    "vendorName": "string",
    "businessCategory": "string",
    "contactEmail": "string",
    "phone": "string",
    "address": "string"
  },
  "contract": {
    "contractTitle": "string",
    "effectiveDate": "YYYY-MM-DD",
    "expirationDate": "YYYY-MM-DD",
    "paymentTerms": "string",
    "taxRate": number,
    "pricing": [
      {"item": "string", "price": number, "unit": "string", "conditions": "string"}
    ],
    "discounts": [
      {"type": "string", "amount": number, "conditions": "string"}
    ],
    "reconciliationSummary": {
      "overview": "one paragraph summary of what is purchased and on what terms",
      "pricingTerms": ["plain-language pricing rule"],
      "discounts": ["plain-language discount rule"],
      "criticalClauses": ["clause that affects invoice amounts or payment"]
    }
  }
}"""


def parse_json_response(response_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from an LLM response.

    Handles common LLM quirks like markdown code blocks.

    Raises:
        json.JSONDecodeError: If no valid JSON found
        ValueError: If the JSON is not an object
    """
    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    if json_match:
        candidate = json_match.group(1).strip()
    else:
        json_match = re.search(r"\{[\s\S]*\}", response_text)
        candidate = json_match.group(0) if json_match else response_text.strip()

    result = json.loads(candidate)
    if not isinstance(result, dict):
        raise ValueError("Expected a JSON object in model response")
    return result


def parse_invoice(payload: dict[str, Any]) -> InvoiceDraft:
    """Validate a provider payload into an InvoiceDraft.

    Accepts the draft either at the top level or under ``extractedData``.
    """
    data = payload.get("extractedData")
    if isinstance(data, dict):
        merged = {**data}
        merged.setdefault("confidence", payload.get("confidence"))
        merged.setdefault("fieldConfidence", payload.get("fieldConfidence") or {})
        payload = merged
    return InvoiceDraft.model_validate(payload)


def parse_contract(payload: dict[str, Any]) -> ContractDraft:
    """Validate a provider payload into a ContractDraft.

    Accepts ``vendor``/``contract`` or the ``extractedVendorData``/
    ``extractedContractData`` key pair.
    """
    return ContractDraft.model_validate(
        {
            "vendor": payload.get("vendor") or payload.get("extractedVendorData") or {},
            "contract": payload.get("contract") or payload.get("extractedContractData") or {},
            "confidence": payload.get("confidence") or 0.0,
        }
    )
