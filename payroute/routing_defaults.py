from __future__ import annotations

from typing import Any

# Keyword lists are matched as lower-case substrings. Translations for zh, ja,
# ru, de, es, fr, pt and ko sit next to the English terms they mirror.

CODE_KEYWORDS = (
    "function",
    "class ",
    "import ",
    "def ",
    "select ",
    "async ",
    "await ",
    "const ",
    "return ",
    "```",
    "=>",
    "regex",
    "python",
    "javascript",
    "typescript",
    "sql",
    "函数",
    "代码",
    "関数",
    "コード",
    "функци",
    "класс ",
    "код ",
    "funktion",
    "klasse ",
    "quellcode",
    "función",
    "código",
    "fonction",
    "classe ",
    "função",
    "함수",
    "코드",
)

REASONING_KEYWORDS = (
    "prove",
    "proof",
    "theorem",
    "derive",
    "derivation",
    "step by step",
    "chain of thought",
    "formally",
    "logically",
    "contradiction",
    "lemma",
    "induction",
    "证明",
    "定理",
    "推导",
    "逐步",
    "証明",
    "導出",
    "段階的",
    "доказ",
    "теорем",
    "вывести",
    "шаг за шагом",
    "beweis",
    "herleit",
    "schritt für schritt",
    "demostrar",
    "teorema",
    "paso a paso",
    "prouver",
    "démontrer",
    "théorème",
    "étape par étape",
    "provar",
    "passo a passo",
    "증명",
    "정리",
    "단계별",
)

SIMPLE_KEYWORDS = (
    "what is",
    "what's",
    "define",
    "meaning of",
    "hello",
    "thanks",
    "thank you",
    "who is",
    "who was",
    "when was",
    "when did",
    "where is",
    "how old",
    "capital of",
    "yes or no",
    "你好",
    "什么是",
    "是什么",
    "谢谢",
    "谁是",
    "こんにちは",
    "とは何",
    "何ですか",
    "ありがとう",
    "привет",
    "что такое",
    "кто такой",
    "спасибо",
    "столица",
    "hallo",
    "was ist",
    "wer ist",
    "danke",
    "hauptstadt",
    "hola",
    "qué es",
    "gracias",
    "capital de",
    "bonjour",
    "qu'est-ce que",
    "merci",
    "capitale de",
    "olá",
    "o que é",
    "obrigado",
    "안녕하세요",
    "무엇인가요",
)

TECHNICAL_KEYWORDS = (
    "algorithm",
    "optimiz",
    "architecture",
    "distributed",
    "kubernetes",
    "microservice",
    "database",
    "infrastructure",
    "latency",
    "throughput",
    "concurrency",
    "scalab",
    "protocol",
    "compiler",
    "算法",
    "优化",
    "架构",
    "分布式",
    "数据库",
    "微服务",
    "アルゴリズム",
    "最適化",
    "アーキテクチャ",
    "分散",
    "データベース",
    "алгоритм",
    "оптимиз",
    "архитектур",
    "распределённ",
    "распределенн",
    "база данных",
    "algorithmus",
    "optimier",
    "architektur",
    "verteilt",
    "datenbank",
    "algoritmo",
    "optimizar",
    "arquitectura",
    "distribuid",
    "algorithme",
    "optimiser",
    "distribué",
    "otimizar",
    "arquitetura",
    "알고리즘",
    "최적화",
    "분산",
)

CREATIVE_KEYWORDS = (
    "story",
    "poem",
    "compose",
    "brainstorm",
    "creative",
    "imagine",
    "fiction",
    "lyrics",
    "故事",
    "诗",
    "物語",
    "詩",
    "рассказ",
    "стихотворение",
    "geschichte",
    "gedicht",
    "cuento",
    "poema",
    "histoire",
    "poème",
    "história",
    "이야기",
    "시를",
)

IMPERATIVE_VERBS = (
    "build",
    "create",
    "implement",
    "design",
    "develop",
    "construct",
    "generate",
    "configure",
    "set up",
    "构建",
    "创建",
    "实现",
    "设计",
    "構築",
    "作成",
    "実装",
    "設計",
    "создай",
    "построй",
    "реализуй",
    "разработай",
    "erstellen",
    "implementieren",
    "entwickeln",
    "entwerfen",
    "construir",
    "crear",
    "implementar",
    "diseñar",
    "construire",
    "créer",
    "implémenter",
    "concevoir",
    "criar",
    "만들어",
    "구현",
)

CONSTRAINT_INDICATORS = (
    "at most",
    "at least",
    "within",
    "no more than",
    "maximum",
    "minimum",
    "must not",
    "limit",
    "budget",
    "o(n",
    "不超过",
    "至少",
    "最多",
    "以内",
    "最大",
    "не более",
    "не менее",
    "максимум",
    "höchstens",
    "mindestens",
    "maximal",
    "como máximo",
    "al menos",
    "au plus",
    "au moins",
    "no máximo",
    "최대",
)

OUTPUT_FORMAT_KEYWORDS = (
    "json",
    "yaml",
    "xml",
    "table",
    "csv",
    "markdown",
    "schema",
    "format as",
    "structured",
    "表格",
    "表形式",
    "таблиц",
    "tabelle",
    "tabla",
    "tableau",
    "tabela",
    "표로",
)

REFERENCE_KEYWORDS = (
    "above",
    "below",
    "previous",
    "following",
    "the docs",
    "the documentation",
    "the code",
    "earlier",
    "attached",
    "as mentioned",
    "上面",
    "上記",
    "выше",
    "ниже",
    "obige",
    "vorherig",
    "anterior",
    "ci-dessus",
    "위의",
)

NEGATION_KEYWORDS = (
    "don't",
    "do not",
    "avoid",
    "never",
    "without",
    "except",
    "exclude",
    "no longer",
    "不要",
    "避免",
    "しないで",
    "避けて",
    "не ",
    "без ",
    "nicht",
    "ohne",
    "keine",
    "nunca",
    "evitar",
    "ne pas",
    "jamais",
    "하지 마",
)

DOMAIN_SPECIFIC_KEYWORDS = (
    "quantum",
    "fpga",
    "vlsi",
    "risc-v",
    "genomics",
    "proteomics",
    "topological",
    "homomorphic",
    "zero-knowledge",
    "lattice-based",
    "photonics",
    "cryptograph",
    "bioinformatics",
    "量子",
    "基因组",
    "密码学",
    "ゲノム",
    "暗号",
    "квантов",
    "геном",
    "криптограф",
    "quanten",
    "genom",
    "kryptograph",
    "cuántic",
    "criptograf",
    "quantique",
    "양자",
)

AGENTIC_TASK_KEYWORDS = (
    "read the file",
    "read file",
    "open the",
    "look at",
    "check the",
    "edit the",
    "modify",
    "update the",
    "change the",
    "write to",
    "create file",
    "run the",
    "execute",
    "deploy",
    "install",
    "compile",
    "after that",
    "once done",
    "step 1",
    "step 2",
    "fix the",
    "debug",
    "until it works",
    "keep trying",
    "iterate",
    "make sure",
    "verify",
    "confirm",
    "读取文件",
    "修改",
    "运行",
    "部署",
    "安装",
    "调试",
    "ファイルを読",
    "編集",
    "実行",
    "デプロイ",
    "インストール",
    "прочитай файл",
    "отредактируй",
    "запусти",
    "разверни",
    "установи",
    "datei lesen",
    "bearbeite",
    "ausführen",
    "bereitstellen",
    "installiere",
    "lee el archivo",
    "ejecuta",
    "despliega",
    "instala",
    "lis le fichier",
    "exécute",
    "déploie",
    "installe",
    "파일을 읽",
    "실행",
    "배포",
)

DEFAULT_DIMENSION_WEIGHTS: dict[str, float] = {
    "token_count": 0.08,
    "code_presence": 0.15,
    "reasoning_markers": 0.18,
    "technical_terms": 0.10,
    "creative_markers": 0.05,
    "simple_indicators": 0.05,
    "multi_step_patterns": 0.12,
    "question_complexity": 0.05,
    "imperative_verbs": 0.03,
    "constraint_count": 0.04,
    "output_format": 0.03,
    "reference_complexity": 0.02,
    "negation_complexity": 0.01,
    "domain_specificity": 0.02,
    "agentic_task": 0.04,
}

DEFAULT_AGENTIC_WEIGHTS: dict[str, float] = {
    "keywords": 1.0,
    "tools": 0.3,
    "tool_results": 0.2,
    "multi_turn": 0.1,
}

BASELINE_MODEL_ID = "anthropic/claude-opus-4"
AUTO_MODEL_IDS = frozenset({"auto", "payroute/auto"})

DEFAULT_TIERS: dict[str, Any] = {
    "SIMPLE": {
        "primary": "google/gemini-2.5-flash",
        "fallback": ["deepseek/deepseek-chat", "openai/gpt-4o-mini"],
    },
    "MEDIUM": {
        "primary": "deepseek/deepseek-chat",
        "fallback": ["google/gemini-2.5-flash", "openai/gpt-4o-mini"],
    },
    "COMPLEX": {
        "primary": "anthropic/claude-sonnet-4",
        "fallback": ["openai/gpt-4o", "google/gemini-2.5-pro"],
    },
    "REASONING": {
        "primary": "deepseek/deepseek-reasoner",
        "fallback": ["openai/o3-mini", "openai/o3"],
    },
}

DEFAULT_AGENTIC_TIERS: dict[str, Any] = {
    "SIMPLE": {
        "primary": "anthropic/claude-haiku-4.5",
        "fallback": ["openai/gpt-4o-mini", "google/gemini-2.5-flash"],
    },
    "MEDIUM": {
        "primary": "anthropic/claude-sonnet-4",
        "fallback": ["openai/gpt-4o", "moonshot/kimi-k2.5"],
    },
    "COMPLEX": {
        "primary": "anthropic/claude-opus-4",
        "fallback": ["anthropic/claude-sonnet-4", "openai/gpt-4o"],
    },
    "REASONING": {
        "primary": "openai/o3",
        "fallback": ["anthropic/claude-sonnet-4", "deepseek/deepseek-reasoner"],
    },
}

DEFAULT_ROUTING_CONFIG: dict[str, Any] = {
    "version": "2.0",
    "scoring": {},
    "tiers": DEFAULT_TIERS,
    "agentic_tiers": DEFAULT_AGENTIC_TIERS,
    "overrides": {
        "max_tokens_force_complex": 100_000,
        "structured_output_min_tier": "MEDIUM",
        "ambiguous_default_tier": "MEDIUM",
        "agentic_mode": False,
        "auto_agentic_detection": True,
        "agentic_threshold": 0.6,
    },
}
